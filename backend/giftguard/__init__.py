"""
giftguard - entitlement and security guard for the digital gift platform.

Decides, for every privileged request, who the caller is, whether the
account may proceed, which subscription plan is currently in force, and
how sensitive values are protected at rest.
"""

__version__ = "1.0.0"
