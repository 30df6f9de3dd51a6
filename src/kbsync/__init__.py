"""
kbsync - keeps a vector-searchable knowledge base in step with a changing content store.
"""

__version__ = "0.1.0"
