from enum import Enum


class ApprovalType(str, Enum):
    # Finance & procurement
    INVOICE = "invoice"
    QUOTATION = "quotation"
    CONTRACT = "contract"
    REPORT = "report"
    PROPOSAL = "proposal"
    POLICY = "policy"
    BUDGET_REQUEST = "budget_request"
    PURCHASE_ORDER = "purchase_order"

    # HR
    LEAVE_REQUEST = "leave_request"
    OVERTIME = "overtime"
    EXPENSE_CLAIM = "expense_claim"
    REIMBURSEMENT = "reimbursement"
    TRAVEL_REQUEST = "travel_request"
    ROLE_CHANGE = "role_change"
    DEPARTMENT_TRANSFER = "department_transfer"
    SALARY_ADJUSTMENT = "salary_adjustment"
    RECRUITMENT_REQUEST = "recruitment_request"
    TRAINING_REQUEST = "training_request"
    PERFORMANCE_REVIEW = "performance_review"

    # Assets, access & operations
    ASSET_ASSIGNMENT = "asset_assignment"
    ASSET_TRANSFER = "asset_transfer"
    FACILITY_REQUEST = "facility_request"
    IT_REQUEST = "it_request"
    SECURITY_ACCESS = "security_access"
    VENDOR_REGISTRATION = "vendor_registration"
    USER_ACCESS = "user_access"
    DATA_ACCESS = "data_access"

    # Sales
    CLIENT_REGISTRATION = "client_registration"
    DISCOUNT_REQUEST = "discount_request"
    CREDIT_LIMIT = "credit_limit"
    PAYMENT_TERMS = "payment_terms"
    PRICE_CHANGE = "price_change"

    # Compliance & projects
    COMPLIANCE_REPORT = "compliance_report"
    LEGAL_DOCUMENT = "legal_document"
    RISK_ASSESSMENT = "risk_assessment"
    PROJECT_INITIATION = "project_initiation"
    PROJECT_CHANGE = "project_change"

    GENERAL = "general"
    OTHER = "other"


class ApprovalStatus(str, Enum):
    DRAFT = "draft"
    PENDING = "pending"
    UNDER_REVIEW = "under_review"
    ADDITIONAL_INFO_REQUIRED = "additional_info_required"
    ESCALATED = "escalated"
    APPROVED = "approved"
    SIGNED = "signed"
    REJECTED = "rejected"
    WITHDRAWN = "withdrawn"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class ApprovalPriority(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    URGENT = "urgent"
    CRITICAL = "critical"


class ApprovalAction(str, Enum):
    SUBMIT = "submit"
    APPROVE = "approve"
    REJECT = "reject"
    SIGN = "sign"
    REQUEST_INFO = "request_info"
    WITHDRAW = "withdraw"
    CANCEL = "cancel"
    ESCALATE = "escalate"
    DELEGATE = "delegate"
    RETURN_FOR_REVISION = "return_for_revision"


class ApprovalFlow(str, Enum):
    SINGLE_APPROVER = "single_approver"
    SEQUENTIAL = "sequential"
    PARALLEL = "parallel"
    MAJORITY = "majority"
    UNANIMOUS = "unanimous"
    CONDITIONAL = "conditional"
    ESCALATION = "escalation"


class SignatureType(str, Enum):
    ELECTRONIC = "electronic"
    DIGITAL = "digital"
    WET_SIGNATURE = "wet_signature"
    BIOMETRIC = "biometric"


class Lifecycle(str, Enum):
    """Record housekeeping state, orthogonal to the workflow status."""

    ACTIVE = "active"
    ARCHIVED = "archived"
    DELETED = "deleted"


class Role(str, Enum):
    OWNER = "owner"
    ADMIN = "admin"
    MANAGER = "manager"
    SUPERVISOR = "supervisor"
    USER = "user"
    CLIENT = "client"


ROLE_HIERARCHY = {
    Role.OWNER: 100,
    Role.ADMIN: 90,
    Role.MANAGER: 70,
    Role.SUPERVISOR: 50,
    Role.USER: 30,
    Role.CLIENT: 10,
}

ELEVATED_ROLES = frozenset({Role.OWNER, Role.ADMIN})

HR_APPROVAL_TYPES = frozenset({
    ApprovalType.LEAVE_REQUEST,
    ApprovalType.OVERTIME,
    ApprovalType.EXPENSE_CLAIM,
    ApprovalType.REIMBURSEMENT,
    ApprovalType.TRAVEL_REQUEST,
    ApprovalType.ROLE_CHANGE,
    ApprovalType.DEPARTMENT_TRANSFER,
})

HIGH_PRIORITIES = frozenset({ApprovalPriority.URGENT, ApprovalPriority.CRITICAL})


def role_rank(role) -> int:
    """Rank for a role value; unknown roles rank below every known one."""
    try:
        return ROLE_HIERARCHY[Role(role)]
    except ValueError:
        return 0
