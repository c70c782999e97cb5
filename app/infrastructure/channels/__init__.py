"""Channel provider clients."""
