"""Framework-agnostic domain models."""
