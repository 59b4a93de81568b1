"""Human-in-the-loop tool approval engine and channel capability."""

from chatrelay.approval.channel import (
    ApprovalChannel,
    ApprovalNotifier,
    BaseApprovalChannel,
    NotifierApprovalChannel,
)
from chatrelay.approval.engine import ApprovalEngine
from chatrelay.approval.models import ApprovalDecision, PendingApproval
from chatrelay.approval.tools import (
    generate_request_id,
    is_dangerous_tool,
    is_safe_tool,
    requires_approval,
)

__all__ = [
    "ApprovalChannel",
    "ApprovalDecision",
    "ApprovalEngine",
    "ApprovalNotifier",
    "BaseApprovalChannel",
    "NotifierApprovalChannel",
    "PendingApproval",
    "generate_request_id",
    "is_dangerous_tool",
    "is_safe_tool",
    "requires_approval",
]
