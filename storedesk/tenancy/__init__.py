"""Multi-tenant storage routing and schema migration."""
