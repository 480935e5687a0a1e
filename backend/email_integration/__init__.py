"""
Email Integration Module

Outgoing email via Resend, used by the forgot-password flow.
"""

from .email_client import EmailClient, EmailResult, EmailStatus

__all__ = ['EmailClient', 'EmailResult', 'EmailStatus']
