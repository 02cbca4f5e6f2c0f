"""Central model registry. Import all models so Alembic autodiscover works."""

from signoff.database import Base  # noqa: F401

from signoff.models.organisation import Organisation  # noqa: F401
from signoff.models.branch import Branch  # noqa: F401
from signoff.models.user import User  # noqa: F401
from signoff.models.fx_rate import FxRate  # noqa: F401
from signoff.models.approval import Approval  # noqa: F401
from signoff.models.approval_history import ApprovalHistory  # noqa: F401
from signoff.models.approval_signature import ApprovalSignature  # noqa: F401
