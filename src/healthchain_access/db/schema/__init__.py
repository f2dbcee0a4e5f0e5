"""SQL schema files."""
