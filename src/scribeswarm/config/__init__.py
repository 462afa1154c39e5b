"""YAML configuration for scribeswarm."""
