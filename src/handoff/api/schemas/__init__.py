"""Request/response schemas for the Handoff API."""
