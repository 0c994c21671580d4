"""Case AI: AI orchestration and output evaluation for case management."""
