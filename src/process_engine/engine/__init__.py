"""Engine components: settings, structured logging, persistence and the CLI."""
