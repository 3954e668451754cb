"""Command-line host for the phenoflow core."""
