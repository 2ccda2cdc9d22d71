"""
ClearMail - Version and metadata
"""

__version__ = "0.4.0"
__author__ = "ClearMail Contributors"
__license__ = "MIT"
__description__ = "LLM-powered IMAP inbox triage: keep, or sort into category folders"
