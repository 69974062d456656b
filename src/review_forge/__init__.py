"""
Review Forge - context retrieval and review orchestration for pull requests.
"""

__version__ = "0.1.0"
