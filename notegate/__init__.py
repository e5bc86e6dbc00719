"""PHI-protected note, handoff and transcript generation gateway."""
