"""External integrations used by the catalog (Google Books ISBN lookup)."""
