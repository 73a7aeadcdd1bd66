"""
REST API for PracticeFlow
"""
