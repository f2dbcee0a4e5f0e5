"""Database resources."""
