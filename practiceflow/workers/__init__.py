"""
Celery workers for PracticeFlow
"""
