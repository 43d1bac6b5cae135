"""Node removal, draining and markers."""
