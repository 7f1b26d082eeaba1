"""Task store, submission service, execution engine and worker loop."""
