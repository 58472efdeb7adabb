"""Adapters layer: persistence, Kafka publishing, and upstream collaborators."""

__all__: list[str] = []
