"""Parcel: self-hosted file sharing with team ownership and background previews."""

__version__ = "0.1.0"
