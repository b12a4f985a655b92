"""Joinery server: multi-tenant API backend with a layered security pipeline."""
