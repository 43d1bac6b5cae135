"""Node decommission libraries, shared by the cookbooks and the cleanup agent."""
