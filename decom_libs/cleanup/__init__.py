"""Host cleanup of the nodes being removed."""
