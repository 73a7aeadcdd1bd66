"""
PracticeFlow - workflow automation for practice management
"""

__version__ = "0.1.0"
