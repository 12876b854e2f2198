"""davgate - session and access-control gate for DAV endpoints."""
