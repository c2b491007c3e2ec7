"""Policy model, backend adapters and the deployment engine."""
