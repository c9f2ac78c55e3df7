"""Job queue, execution and retry machinery."""
