"""Adapters layer for Clinical Import.

This module contains the format importers and the in-memory collaborator
implementations. Adapters implement Port interfaces defined in the domain
layer and handle the transformation from external formats to domain models.
"""
