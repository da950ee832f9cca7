"""Core — installation orchestration engine."""
