"""Service-layer helpers wrapping engine components for the API."""
