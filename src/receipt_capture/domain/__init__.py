"""Receipt domain types and normalisation helpers."""
