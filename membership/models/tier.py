"""
membership/models/tier.py

Tier and capability identifiers.

Capabilities are a closed enumeration so the catalog can check at load time
that every capability has an explicit entry for every tier.
"""

from enum import Enum


class Tier(str, Enum):
    FREE = "free"
    PREMIUM = "premium"
    PRO = "pro"


class Capability(str, Enum):
    """
    Gated features of the marketplace.

    Boolean capabilities:
    - basic-troubleshooting, advanced-troubleshooting, ai-assistant
    - premium-ebooks, priority-support, unlimited-flows
    - ebook-creation, analytics, csv-import

    Metered capabilities (numeric limit per billing period):
    - monthly-flows: flows created
    - monthly-ai-requests: AI assistant requests
    """
    BASIC_TROUBLESHOOTING = "basic-troubleshooting"
    ADVANCED_TROUBLESHOOTING = "advanced-troubleshooting"
    AI_ASSISTANT = "ai-assistant"
    PREMIUM_EBOOKS = "premium-ebooks"
    PRIORITY_SUPPORT = "priority-support"
    UNLIMITED_FLOWS = "unlimited-flows"
    EBOOK_CREATION = "ebook-creation"
    ANALYTICS = "analytics"
    CSV_IMPORT = "csv-import"
    MONTHLY_FLOWS = "monthly-flows"
    MONTHLY_AI_REQUESTS = "monthly-ai-requests"
