"""Node decommission cookbooks."""
