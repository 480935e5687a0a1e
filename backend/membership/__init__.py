"""
Membership Module

Lodge -> people resolution and the admin transfer built on it.
"""

from .resolver import MembershipResolver
from .transfer import AdminTransferService, TransferResult

__all__ = ['MembershipResolver', 'AdminTransferService', 'TransferResult']
