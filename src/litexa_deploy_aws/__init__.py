"""
AWS deployment steps for Litexa skill projects: S3 asset sync and IAM role
reconciliation.
"""

__version__ = "0.1.0"
