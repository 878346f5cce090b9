"""Job execution and dispatch."""
