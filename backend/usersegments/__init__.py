"""
User Segments Service

Assigns named segments to users, rolls segments out to a share of the active
user population and expires time-limited assignments in the background.
"""

__version__ = "1.0.0"
