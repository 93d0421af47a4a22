"""
ChatMem package initialization.

Long-term conversational memory: extraction of facts from chat turns and
hybrid retrieval of those facts for later conversations.
"""

# Setup logging configuration on package import
from .utils.logging_config import setup_logging

setup_logging()

__version__ = '1.0.0'
