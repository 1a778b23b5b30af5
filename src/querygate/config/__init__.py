"""Configuration models for the querygate server."""

from querygate.config.serving_models import ServingConfig, parse_database_url, redact_url

__all__ = ["ServingConfig", "parse_database_url", "redact_url"]
