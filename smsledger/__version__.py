"""
smsledger - Version and metadata
"""

__version__ = "0.4.0"
__author__ = "smsledger Contributors"
__license__ = "MIT"
__description__ = (
    "Hybrid self-learning classifier and extractor for card/bank payment SMS"
)
