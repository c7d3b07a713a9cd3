"""
Data Ingestion Module
"""
from .seed_db import DemoSeeder

__all__ = [
    "DemoSeeder",
]
