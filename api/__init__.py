"""HTTP API for the identity verification engine."""
