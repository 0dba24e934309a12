"""
Wardrobe Module

Persistence model for uploaded garment images and their processing state.
"""

from src.modules.wardrobe.models import ImageRecord, ProcessingStatus

__all__ = ["ImageRecord", "ProcessingStatus"]
