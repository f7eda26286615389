"""
ReviewGate - human review and approval workflow for AI-generated SQL.
"""

__version__ = "1.0.0"
