"""
Common/Shared Fixtures

Base ID generators used across test layers.
"""
import uuid


def make_tenant_id() -> str:
    """Generate a unique tenant ID"""
    return f"ten_test_{uuid.uuid4().hex[:12]}"


def make_campaign_id() -> str:
    """Generate a unique campaign ID"""
    return f"cmp_test_{uuid.uuid4().hex[:12]}"
