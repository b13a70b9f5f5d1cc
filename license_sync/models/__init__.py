"""Database models for the license sync service"""

from license_sync.models.license import ExternalLicense, License

__all__ = [
    "ExternalLicense",
    "License",
]
