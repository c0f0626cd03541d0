# quizgate/__init__.py
"""
Quiz Gate

A FastAPI service that batches scraped quiz questions, paces them against
a shared provider rate budget, and serves validated answers back to the
browser extension one command at a time.
"""

__version__ = "1.0.0"
