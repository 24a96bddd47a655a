"""
GraphMem: long-term conversational memory as flat facts and per-user entity graphs.
"""

# Setup logging configuration on package import
from .utils.logging_config import setup_logging

__version__ = '0.1.0'

setup_logging()
