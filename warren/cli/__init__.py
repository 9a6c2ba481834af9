"""Warren CLI — click command hierarchy for the host and its registry."""
