"""GM Assistant encounter runtime."""
