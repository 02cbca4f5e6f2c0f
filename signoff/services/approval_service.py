"""
Approval workflow service.

``ApprovalWorkflow`` is the only writer of approvals. Every mutation follows
the same order:

    load under scope -> validate (no side effects) -> mutate, version + 1
    -> history row -> commit -> cache invalidation -> domain events

Reads go through the cache; single-entity hits are re-checked against the
caller's scope before they are returned.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Optional

from sqlalchemy import Select, case, func, or_, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
import structlog

from signoff.config import settings
from signoff.domain.actor import Actor
from signoff.domain.enums import (
    HIGH_PRIORITIES,
    ApprovalAction,
    ApprovalPriority,
    ApprovalStatus,
    Lifecycle,
    Role,
    role_rank,
)
from signoff.domain.events import (
    ApprovalActionPerformed,
    ApprovalCreated,
    ApprovalUpdated,
    BroadcastEnvelope,
    DomainEvent,
    EventBus,
    HighPriorityApprovalAction,
)
from signoff.domain.transitions import (
    TERMINAL_STATUSES,
    check_active,
    target_status,
    validate_lifecycle_change,
    validate_transition,
)
from signoff.exceptions import (
    ConflictError,
    InfrastructureError,
    PermissionDeniedError,
    ValidationError,
    WorkflowError,
)
from signoff.models.approval import Approval, generate_reference
from signoff.models.approval_signature import ApprovalSignature
from signoff.schemas.approval import (
    ApprovalActionRequest,
    ApprovalCreate,
    ApprovalQuery,
    ApprovalResponse,
    ApprovalStats,
    ApprovalStatsSummary,
    ApprovalUpdate,
    BulkActionRequest,
    BulkActionResult,
    BulkItemResult,
    SignRequest,
)
from signoff.services.cache import ApprovalCache
from signoff.services.directory import find_active_member
from signoff.services.history_service import append_history, list_history
from signoff.services.routing_service import route
from signoff.services.scoping import ensure_visible, is_visible, scope_query

logger = structlog.get_logger()

PENDING_STATUSES = (
    ApprovalStatus.PENDING,
    ApprovalStatus.UNDER_REVIEW,
    ApprovalStatus.ADDITIONAL_INFO_REQUIRED,
    ApprovalStatus.ESCALATED,
)

_PRIORITY_ORDER = {
    ApprovalPriority.CRITICAL: 5,
    ApprovalPriority.URGENT: 4,
    ApprovalPriority.HIGH: 3,
    ApprovalPriority.MEDIUM: 2,
    ApprovalPriority.LOW: 1,
}

# ApprovalUpdate fields that are request controls, not approval columns
_UPDATE_CONTROLS = {"expected_version", "send_notification"}


def _value(member) -> Optional[str]:
    return None if member is None else str(getattr(member, "value", member))


def _to_response(approval: Approval) -> ApprovalResponse:
    return ApprovalResponse.model_validate(approval)


def is_high_priority(approval) -> bool:
    if approval.priority is not None and ApprovalPriority(approval.priority) in HIGH_PRIORITIES:
        return True
    return approval.amount is not None and Decimal(str(approval.amount)) > settings.HIGH_VALUE_AMOUNT_THRESHOLD


def check_version(approval: Approval, expected_version: Optional[int]) -> None:
    if expected_version is not None and expected_version != approval.version:
        raise ConflictError(
            "Approval was modified by someone else; reload and retry",
            code="VERSION_CONFLICT",
            details={"expected_version": expected_version, "current_version": approval.version},
        )


class ApprovalWorkflow:
    def __init__(self, session: AsyncSession, cache: ApprovalCache, bus: EventBus):
        self.session = session
        self.cache = cache
        self.bus = bus

    # ---------- plumbing ----------

    async def _load(
        self, approval_id: uuid.UUID, actor: Actor, include_deleted: bool = False
    ) -> Approval:
        stmt = scope_query(
            select(Approval).where(Approval.id == approval_id), actor, include_deleted
        )
        result = await self.session.execute(stmt)
        return ensure_visible(result.scalar_one_or_none(), actor, include_deleted)

    def _touch(self, approval: Approval, now: datetime) -> None:
        approval.version += 1
        approval.updated_at = now
        approval.recompute_overdue(now)

    async def _write(self, approval: Approval, history: Optional[dict] = None) -> None:
        # read before the try: a rollback expires the instance and reloading
        # attributes would need the lost connection
        approval_id = approval.id
        try:
            self.session.add(approval)
            await self.session.flush()
            if history is not None:
                await append_history(self.session, approval.id, **history)
            await self.session.commit()
        except SQLAlchemyError as exc:
            await self.session.rollback()
            logger.error(
                "approval_write_failed",
                approval_id=str(approval_id) if approval_id else None,
                error=str(exc),
            )
            raise InfrastructureError("Approval store is unavailable") from exc

    async def _after_commit(self, approval: Approval, events: list[DomainEvent]) -> None:
        await self.cache.invalidate(approval)
        await self.bus.publish_all(events)

    def _high_priority_event(
        self, approval: Approval, actor: Actor, action, from_status, to_status
    ) -> Optional[HighPriorityApprovalAction]:
        if not is_high_priority(approval):
            return None
        return HighPriorityApprovalAction(
            approval_id=approval.id,
            organisation_id=approval.organisation_id,
            actor_id=actor.user_id,
            reference=approval.approval_reference,
            action=_value(action),
            from_status=_value(from_status),
            to_status=_value(to_status),
            priority=_value(approval.priority),
            amount=str(approval.amount) if approval.amount is not None else None,
        )

    # ---------- create ----------

    async def create(self, data: ApprovalCreate, actor: Actor) -> Approval:
        if data.approver_id is not None:
            if str(data.approver_id) == str(actor.user_id):
                raise ValidationError("Requester cannot approve their own request")
            member = await find_active_member(self.session, actor.organisation_id, data.approver_id)
            if member is None:
                raise ValidationError(
                    "Approver must be an active user in your organisation",
                    details={"approver_id": str(data.approver_id)},
                )
            approver_id = member.id
        else:
            candidates = await route(
                self.session, data.type, data.amount, actor, currency=data.currency
            )
            approver_id = candidates[0].approver_id if candidates else None

        now = datetime.utcnow()
        status = ApprovalStatus.PENDING if data.auto_submit else ApprovalStatus.DRAFT
        approval = Approval(
            id=uuid.uuid4(),
            approval_reference=generate_reference(data.type),
            title=data.title,
            description=data.description,
            type=data.type,
            priority=data.priority,
            flow_type=data.flow_type,
            entity_type=data.entity_type,
            entity_id=data.entity_id,
            entity_data=data.entity_data,
            status=status,
            current_step=1,
            total_steps=1,
            approved_count=0,
            rejected_count=0,
            requester_id=actor.user_id,
            approver_id=approver_id,
            organisation_id=actor.organisation_id,
            branch_id=actor.branch_id,
            deadline=data.deadline,
            is_overdue=False,
            is_urgent=data.is_urgent,
            created_at=now,
            updated_at=now,
            submitted_at=now if data.auto_submit else None,
            conditions=data.conditions,
            amount=data.amount,
            currency=data.currency or (settings.BASE_CURRENCY if data.amount is not None else None),
            supporting_documents=data.supporting_documents or [],
            attachments=data.attachments or [],
            requires_signature=data.requires_signature,
            is_signed=False,
            signature_type=data.signature_type,
            is_escalated=False,
            escalation_level=0,
            request_source=data.request_source or "api",
            custom_fields=data.custom_fields,
            extra_metadata=data.metadata,
            lifecycle=Lifecycle.ACTIVE,
            version=1,
        )
        approval.recompute_overdue(now)

        history = None
        if data.auto_submit:
            history = {
                "action": ApprovalAction.SUBMIT,
                "from_status": ApprovalStatus.DRAFT,
                "to_status": ApprovalStatus.PENDING,
                "actor_id": actor.user_id,
                "comments": "Submitted on creation",
            }
        await self._write(approval, history)

        events: list[DomainEvent] = [
            ApprovalCreated(
                approval_id=approval.id,
                organisation_id=approval.organisation_id,
                actor_id=actor.user_id,
                reference=approval.approval_reference,
                status=status.value,
                approver_id=approver_id,
                notify=data.send_notification,
            )
        ]
        high = self._high_priority_event(
            approval, actor, "create", None, status
        )
        if high:
            events.append(high)
        await self._after_commit(approval, events)

        logger.info(
            "approval_created",
            approval_id=str(approval.id),
            reference=approval.approval_reference,
            status=status.value,
            approver_id=str(approver_id) if approver_id else None,
            organisation_id=str(actor.organisation_id),
        )
        return approval

    # ---------- reads ----------

    def _filtered(self, stmt: Select, query: ApprovalQuery) -> Select:
        if query.search:
            pattern = f"%{query.search}%"
            stmt = stmt.where(
                or_(
                    Approval.title.ilike(pattern),
                    Approval.description.ilike(pattern),
                    Approval.approval_reference.ilike(pattern),
                )
            )
        if query.type:
            stmt = stmt.where(Approval.type == query.type)
        if query.status:
            stmt = stmt.where(Approval.status == query.status)
        if query.priority:
            stmt = stmt.where(Approval.priority == query.priority)
        if query.is_overdue is not None:
            stmt = stmt.where(Approval.is_overdue.is_(query.is_overdue))
        if query.is_urgent is not None:
            stmt = stmt.where(Approval.is_urgent.is_(query.is_urgent))
        if query.created_from:
            stmt = stmt.where(Approval.created_at >= query.created_from)
        if query.created_to:
            stmt = stmt.where(Approval.created_at <= query.created_to)
        return stmt

    async def _page(self, stmt: Select, query: ApprovalQuery) -> tuple[list[ApprovalResponse], int]:
        total = (
            await self.session.execute(select(func.count()).select_from(stmt.subquery()))
        ).scalar() or 0

        column = getattr(Approval, query.sort_by)
        order = column.asc() if query.sort_order == "asc" else column.desc()
        result = await self.session.execute(
            stmt.order_by(order, Approval.id)
            .offset((query.page - 1) * query.limit)
            .limit(query.limit)
        )
        return [_to_response(a) for a in result.scalars().all()], total

    async def _cached_page(
        self, key: str, stmt: Select, query: ApprovalQuery, actor: Actor
    ) -> tuple[list[ApprovalResponse], int]:
        cached = await self.cache.get_json(key)
        if cached is not None:
            return [ApprovalResponse.model_validate(i) for i in cached["items"]], cached["total"]

        generation = await self.cache.generation(actor.organisation_id)
        items, total = await self._page(stmt, query)
        await self.cache.fill(
            key,
            {"items": [i.model_dump(mode="json") for i in items], "total": total},
            actor.organisation_id,
            generation,
        )
        return items, total

    async def list(self, query: ApprovalQuery, actor: Actor) -> tuple[list[ApprovalResponse], int]:
        key = self.cache.list_key(
            actor.organisation_id, actor.user_id, query.model_dump(mode="json")
        )
        stmt = self._filtered(
            scope_query(select(Approval), actor, query.include_deleted), query
        )
        return await self._cached_page(key, stmt, query, actor)

    async def my_requests(
        self, query: ApprovalQuery, actor: Actor
    ) -> tuple[list[ApprovalResponse], int]:
        key = self.cache.mine_key(
            actor.organisation_id, actor.user_id, query.model_dump(mode="json")
        )
        stmt = self._filtered(
            scope_query(select(Approval), actor, query.include_deleted).where(
                Approval.requester_id == actor.user_id
            ),
            query,
        )
        return await self._cached_page(key, stmt, query, actor)

    async def pending(self, actor: Actor) -> list[ApprovalResponse]:
        """Items waiting on the actor's decision, most urgent first."""
        key = self.cache.pending_key(actor.organisation_id, actor.user_id)
        cached = await self.cache.get_json(key)
        if cached is not None:
            return [ApprovalResponse.model_validate(i) for i in cached]

        generation = await self.cache.generation(actor.organisation_id)
        stmt = scope_query(
            select(Approval).where(
                Approval.status.in_(PENDING_STATUSES),
                or_(
                    Approval.approver_id == actor.user_id,
                    Approval.delegated_to_id == actor.user_id,
                ),
            ),
            actor,
        ).order_by(
            case(_PRIORITY_ORDER, value=Approval.priority, else_=0).desc(),
            Approval.submitted_at.asc(),
            Approval.created_at.asc(),
        )
        result = await self.session.execute(stmt)
        items = [_to_response(a) for a in result.scalars().all()]
        await self.cache.fill(
            key, [i.model_dump(mode="json") for i in items], actor.organisation_id, generation
        )
        return items

    async def _cached_single(self, key: str, actor: Actor) -> Optional[ApprovalResponse]:
        cached = await self.cache.get_json(key)
        if cached is None:
            return None
        response = ApprovalResponse.model_validate(cached)
        ensure_visible(response, actor)
        return response

    async def get_one(self, approval_id: uuid.UUID, actor: Actor) -> ApprovalResponse:
        key = self.cache.id_key(actor.organisation_id, approval_id)
        hit = await self._cached_single(key, actor)
        if hit is not None:
            return hit

        generation = await self.cache.generation(actor.organisation_id)
        response = _to_response(await self._load(approval_id, actor))
        await self.cache.fill(key, response.model_dump(mode="json"), actor.organisation_id, generation)
        return response

    async def get_by_reference(self, reference: str, actor: Actor) -> ApprovalResponse:
        key = self.cache.ref_key(actor.organisation_id, reference)
        hit = await self._cached_single(key, actor)
        if hit is not None:
            return hit

        generation = await self.cache.generation(actor.organisation_id)
        stmt = scope_query(
            select(Approval).where(Approval.approval_reference == reference), actor
        )
        result = await self.session.execute(stmt)
        response = _to_response(ensure_visible(result.scalar_one_or_none(), actor))
        await self.cache.fill(key, response.model_dump(mode="json"), actor.organisation_id, generation)
        return response

    # ---------- edits ----------

    async def update(self, approval_id: uuid.UUID, data: ApprovalUpdate, actor: Actor) -> Approval:
        approval = await self._load(approval_id, actor)
        check_active(approval)
        if str(approval.requester_id) != str(actor.user_id):
            raise PermissionDeniedError("Only the requester can modify this approval")
        if ApprovalStatus(approval.status) != ApprovalStatus.DRAFT:
            raise ConflictError(
                "Only draft approvals can be modified",
                details={"status": _value(approval.status)},
            )
        check_version(approval, data.expected_version)

        changes = data.model_dump(exclude_unset=True, exclude=_UPDATE_CONTROLS)
        if "metadata" in changes:
            changes["extra_metadata"] = changes.pop("metadata")
        for field, value in changes.items():
            setattr(approval, field, value)

        self._touch(approval, datetime.utcnow())
        await self._write(approval)

        await self._after_commit(
            approval,
            [
                ApprovalUpdated(
                    approval_id=approval.id,
                    organisation_id=approval.organisation_id,
                    actor_id=actor.user_id,
                    reference=approval.approval_reference,
                    change="edited",
                    notify=data.send_notification,
                )
            ],
        )
        logger.info(
            "approval_updated",
            approval_id=str(approval.id),
            fields=sorted(changes),
            version=approval.version,
        )
        return approval

    # ---------- transitions ----------

    async def _resolve_target(self, approval: Approval, target_id, field: str) -> uuid.UUID:
        if target_id is None:
            raise ValidationError(f"{field} is required for this action", details={"field": field})
        member = await find_active_member(self.session, approval.organisation_id, target_id)
        if member is None:
            raise ValidationError(
                "Target must be an active user in the same organisation",
                details={field: str(target_id)},
            )
        return member.id

    async def _transition(
        self,
        approval_id: uuid.UUID,
        action: ApprovalAction,
        actor: Actor,
        *,
        comments: Optional[str] = None,
        reason: Optional[str] = None,
        delegate_to_id: Optional[uuid.UUID] = None,
        escalate_to_id: Optional[uuid.UUID] = None,
        send_notification: bool = True,
        expected_version: Optional[int] = None,
    ) -> Approval:
        approval = await self._load(approval_id, actor)
        rule = validate_transition(approval, action, actor)
        check_version(approval, expected_version)

        target_user = None
        if rule.action == ApprovalAction.DELEGATE:
            target_user = await self._resolve_target(approval, delegate_to_id, "delegate_to_id")
        elif rule.action == ApprovalAction.ESCALATE:
            target_user = await self._resolve_target(approval, escalate_to_id, "escalate_to_id")

        now = datetime.utcnow()
        from_status = ApprovalStatus(approval.status)
        to_status = target_status(rule, approval)
        approval.status = to_status

        if rule.action == ApprovalAction.SUBMIT:
            approval.submitted_at = now
        elif rule.action == ApprovalAction.APPROVE:
            approval.approved_at = now
            approval.approval_comments = comments
            approval.approved_count = (approval.approved_count or 0) + 1
            if not approval.requires_signature:
                approval.completed_at = now
        elif rule.action == ApprovalAction.REJECT:
            approval.rejected_at = now
            approval.rejection_reason = reason or comments
            approval.rejected_count = (approval.rejected_count or 0) + 1
        elif rule.action == ApprovalAction.DELEGATE:
            approval.delegated_from_id = actor.user_id
            approval.delegated_to_id = target_user
        elif rule.action == ApprovalAction.ESCALATE:
            approval.is_escalated = True
            approval.escalated_at = now
            approval.escalation_level = (approval.escalation_level or 0) + 1
            approval.escalated_to_id = target_user
            approval.escalation_reason = reason or comments

        self._touch(approval, now)
        await self._write(
            approval,
            {
                "action": rule.action,
                "from_status": from_status,
                "to_status": to_status,
                "actor_id": actor.user_id,
                "comments": comments or reason,
                "metadata": {"target_user_id": str(target_user)} if target_user else None,
            },
        )

        events = self._action_events(
            approval, actor, rule.action, from_status, to_status,
            comments=comments or reason,
            target_user_id=target_user,
            notify=send_notification,
        )
        await self._after_commit(approval, events)

        logger.info(
            "approval_action_performed",
            approval_id=str(approval.id),
            action=rule.action.value,
            from_status=from_status.value,
            to_status=to_status.value,
            actor_id=str(actor.user_id),
            version=approval.version,
        )
        return approval

    def _action_events(
        self,
        approval: Approval,
        actor: Actor,
        action: ApprovalAction,
        from_status: ApprovalStatus,
        to_status: ApprovalStatus,
        comments: Optional[str] = None,
        target_user_id: Optional[uuid.UUID] = None,
        notify: bool = True,
    ) -> list[DomainEvent]:
        events: list[DomainEvent] = [
            ApprovalActionPerformed(
                approval_id=approval.id,
                organisation_id=approval.organisation_id,
                actor_id=actor.user_id,
                reference=approval.approval_reference,
                action=action.value,
                from_status=from_status.value,
                to_status=to_status.value,
                comments=comments,
                target_user_id=target_user_id,
                notify=notify,
            )
        ]
        high = self._high_priority_event(approval, actor, action, from_status, to_status)
        if high:
            events.append(high)
        return events

    async def submit(
        self,
        approval_id: uuid.UUID,
        actor: Actor,
        comments: Optional[str] = None,
        expected_version: Optional[int] = None,
    ) -> Approval:
        return await self._transition(
            approval_id,
            ApprovalAction.SUBMIT,
            actor,
            comments=comments,
            expected_version=expected_version,
        )

    async def perform_action(
        self, approval_id: uuid.UUID, request: ApprovalActionRequest, actor: Actor
    ) -> Approval:
        if ApprovalAction(request.action) == ApprovalAction.SIGN:
            raise ValidationError("Signatures are recorded through the sign operation")
        return await self._transition(
            approval_id,
            request.action,
            actor,
            comments=request.comments,
            reason=request.reason,
            delegate_to_id=request.delegate_to_id,
            escalate_to_id=request.escalate_to_id,
            send_notification=request.send_notification,
            expected_version=request.expected_version,
        )

    async def withdraw(
        self,
        approval_id: uuid.UUID,
        actor: Actor,
        comments: Optional[str] = None,
        expected_version: Optional[int] = None,
    ) -> Approval:
        return await self._transition(
            approval_id,
            ApprovalAction.WITHDRAW,
            actor,
            comments=comments,
            expected_version=expected_version,
        )

    async def sign(
        self,
        approval_id: uuid.UUID,
        request: SignRequest,
        actor: Actor,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> tuple[Approval, ApprovalSignature]:
        approval = await self._load(approval_id, actor)
        rule = validate_transition(approval, ApprovalAction.SIGN, actor)
        check_version(approval, request.expected_version)

        now = datetime.utcnow()
        from_status = ApprovalStatus(approval.status)
        to_status = target_status(rule, approval)

        signature = ApprovalSignature(
            id=uuid.uuid4(),
            approval_id=approval.id,
            signer_id=actor.user_id,
            signature_type=request.signature_type,
            signature_url=request.signature_url,
            signature_data=request.signature_data,
            signed_at=now,
            certificate_id=request.certificate_id,
            certificate_issuer=request.certificate_issuer,
            certificate_subject=request.certificate_subject,
            certificate_valid_from=request.certificate_valid_from,
            certificate_valid_to=request.certificate_valid_to,
            certificate_fingerprint=request.certificate_fingerprint,
            signature_algorithm=request.signature_algorithm,
            biometric_data=request.biometric_data,
            legal_info=request.legal_info,
            ip_address=ip_address,
            user_agent=user_agent,
            is_valid=True,
            validated_at=now,
        )
        self.session.add(signature)

        approval.status = to_status
        approval.is_signed = True
        approval.signed_at = now
        approval.completed_at = now
        approval.signature_type = request.signature_type
        approval.signature_url = request.signature_url
        approval.signature_metadata = {
            "signature_id": str(signature.id),
            "signer_id": str(actor.user_id),
            "certificate_id": request.certificate_id,
            "certificate_fingerprint": request.certificate_fingerprint,
            "signature_algorithm": request.signature_algorithm,
            "ip_address": ip_address,
        }

        self._touch(approval, now)
        await self._write(
            approval,
            {
                "action": ApprovalAction.SIGN,
                "from_status": from_status,
                "to_status": to_status,
                "actor_id": actor.user_id,
                "comments": request.comments or "Approval signed",
                "metadata": {"signature_id": str(signature.id)},
            },
        )

        events = self._action_events(
            approval, actor, ApprovalAction.SIGN, from_status, to_status, comments=request.comments
        )
        await self._after_commit(approval, events)

        logger.info(
            "approval_signed",
            approval_id=str(approval.id),
            signature_id=str(signature.id),
            signature_type=_value(request.signature_type),
            signer_id=str(actor.user_id),
        )
        return approval, signature

    async def bulk_action(self, request: BulkActionRequest, actor: Actor) -> BulkActionResult:
        """Apply one action to many approvals in turn; a failing item never stops the rest."""
        results: list[BulkItemResult] = []
        for approval_id in request.approval_ids:
            item = ApprovalActionRequest(
                action=request.action,
                comments=request.comments,
                reason=request.reason,
                send_notification=request.send_notification,
            )
            try:
                await self.perform_action(approval_id, item, actor)
            except WorkflowError as exc:
                results.append(
                    BulkItemResult(id=approval_id, success=False, code=exc.code, message=exc.message)
                )
                continue
            except SQLAlchemyError as exc:
                await self.session.rollback()
                results.append(
                    BulkItemResult(
                        id=approval_id,
                        success=False,
                        code=InfrastructureError.code,
                        message=str(exc),
                    )
                )
                continue
            results.append(
                BulkItemResult(id=approval_id, success=True, message="Action completed successfully")
            )

        successful = sum(1 for r in results if r.success)
        logger.info(
            "approval_bulk_action_completed",
            action=_value(request.action),
            processed=len(results),
            successful=successful,
            failed=len(results) - successful,
        )
        return BulkActionResult(
            processed=len(results),
            successful=successful,
            failed=len(results) - successful,
            results=results,
        )

    # ---------- lifecycle ----------

    async def _change_lifecycle(
        self, approval_id: uuid.UUID, target: Lifecycle, actor: Actor
    ) -> Approval:
        approval = await self._load(approval_id, actor)
        validate_lifecycle_change(approval, target, actor)

        now = datetime.utcnow()
        approval.lifecycle = target
        if target == Lifecycle.ARCHIVED:
            approval.archived_at = now
            approval.archived_by = actor.user_id
        else:
            approval.deleted_at = now

        self._touch(approval, now)
        await self._write(approval)

        change = "archived" if target == Lifecycle.ARCHIVED else "deleted"
        await self._after_commit(
            approval,
            [
                ApprovalUpdated(
                    approval_id=approval.id,
                    organisation_id=approval.organisation_id,
                    actor_id=actor.user_id,
                    reference=approval.approval_reference,
                    change=change,
                )
            ],
        )
        logger.info(
            f"approval_{change}",
            approval_id=str(approval.id),
            actor_id=str(actor.user_id),
        )
        return approval

    async def archive(self, approval_id: uuid.UUID, actor: Actor) -> Approval:
        return await self._change_lifecycle(approval_id, Lifecycle.ARCHIVED, actor)

    async def remove(self, approval_id: uuid.UUID, actor: Actor) -> Approval:
        """Soft delete. The row stays for audit; it drops out of every scoped read."""
        return await self._change_lifecycle(approval_id, Lifecycle.DELETED, actor)

    # ---------- related records ----------

    async def history(self, approval_id: uuid.UUID, actor: Actor):
        approval = await self._load(approval_id, actor)
        return await list_history(self.session, approval.id)

    async def signatures(self, approval_id: uuid.UUID, actor: Actor) -> list[ApprovalSignature]:
        approval = await self._load(approval_id, actor)
        result = await self.session.execute(
            select(ApprovalSignature)
            .where(ApprovalSignature.approval_id == approval.id)
            .order_by(ApprovalSignature.signed_at)
        )
        return list(result.scalars().all())

    # ---------- stats ----------

    async def stats(self, actor: Actor) -> ApprovalStats:
        key = self.cache.stats_key(actor.organisation_id, actor.user_id)
        cached = await self.cache.get_json(key)
        if cached is not None:
            return ApprovalStats.model_validate(cached)

        generation = await self.cache.generation(actor.organisation_id)
        status_rows = await self.session.execute(
            scope_query(
                select(Approval.status, func.count(Approval.id)).group_by(Approval.status),
                actor,
            )
        )
        by_status = {_value(status): count for status, count in status_rows.all()}

        type_rows = await self.session.execute(
            scope_query(
                select(Approval.type, func.count(Approval.id)).group_by(Approval.type),
                actor,
            )
        )
        by_type = {_value(kind): count for kind, count in type_rows.all()}

        overdue = (
            await self.session.execute(
                scope_query(
                    select(func.count(Approval.id)).where(Approval.is_overdue.is_(True)),
                    actor,
                )
            )
        ).scalar() or 0

        since = datetime.utcnow() - timedelta(days=30)
        recent = (
            await self.session.execute(
                scope_query(
                    select(func.count(Approval.id)).where(Approval.created_at >= since),
                    actor,
                )
            )
        ).scalar() or 0

        stats = ApprovalStats(
            summary=ApprovalStatsSummary(
                total=sum(by_status.values()),
                pending=by_status.get(ApprovalStatus.PENDING.value, 0),
                approved=by_status.get(ApprovalStatus.APPROVED.value, 0),
                rejected=by_status.get(ApprovalStatus.REJECTED.value, 0),
                overdue=overdue,
            ),
            by_type=by_type,
            by_status=by_status,
            recent_activity=recent,
            can_approve=role_rank(actor.role) >= role_rank(Role.MANAGER),
        )
        await self.cache.fill(
            key,
            stats.model_dump(mode="json"),
            actor.organisation_id,
            generation,
            settings.CACHE_STATS_TTL,
        )
        return stats

    # ---------- scheduled ----------

    async def refresh_overdue(self, now: Optional[datetime] = None) -> int:
        """Flag live approvals whose deadline has passed. Runs without an actor."""
        now = now or datetime.utcnow()
        result = await self.session.execute(
            select(Approval).where(
                Approval.lifecycle == Lifecycle.ACTIVE,
                Approval.status.not_in(list(TERMINAL_STATUSES)),
                Approval.deadline.is_not(None),
                Approval.deadline < now,
                Approval.is_overdue.is_(False),
            )
        )
        flagged = [a for a in result.scalars().all() if not a.is_terminal]
        if not flagged:
            return 0

        for approval in flagged:
            approval.version += 1
            approval.updated_at = now
            approval.is_overdue = True

        try:
            await self.session.commit()
        except SQLAlchemyError as exc:
            await self.session.rollback()
            logger.error("overdue_refresh_failed", error=str(exc))
            raise InfrastructureError("Approval store is unavailable") from exc

        by_organisation: dict[str, list[Approval]] = {}
        events: list[DomainEvent] = []
        for approval in flagged:
            await self.cache.invalidate(approval)
            by_organisation.setdefault(str(approval.organisation_id), []).append(approval)
            events.append(
                ApprovalUpdated(
                    approval_id=approval.id,
                    organisation_id=approval.organisation_id,
                    actor_id=None,
                    reference=approval.approval_reference,
                    change="overdue",
                    notify=False,
                )
            )
        for approvals in by_organisation.values():
            first = approvals[0]
            events.append(
                BroadcastEnvelope(
                    approval_id=first.id,
                    organisation_id=first.organisation_id,
                    actor_id=None,
                    event_name="approval:overdue",
                    data=_overdue_frame(approvals),
                )
            )
        await self.bus.publish_all(events)

        logger.info("approvals_marked_overdue", count=len(flagged))
        return len(flagged)


def _overdue_frame(approvals: list[Approval]) -> dict[str, Any]:
    return {
        "count": len(approvals),
        "approvals": [
            {"id": str(a.id), "reference": a.approval_reference, "deadline": a.deadline.isoformat()}
            for a in approvals
        ],
    }
