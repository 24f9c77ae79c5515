"""Service layer packages."""
