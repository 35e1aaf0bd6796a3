"""Access control evaluator.

Decides whether a principal's role may perform an action on a resource type,
based on the classification registry, and records the decision as an audit
entry:

- every deny records one failed_access entry (success=False), including
  requests with a blank action or resource type
- the first allow of a (role, resource_type, resource_id, action) on an
  audited classification level records one data_access entry

An evaluator is request-scoped: build one per request so that "first allow"
is tracked per request.
"""

import logging
from typing import Protocol

from shield_audit.audit.classification import ClassificationRegistry, get_registry
from shield_audit.audit.errors import UnknownResourceTypeError
from shield_audit.audit.models import (
    AccessDecision,
    AuditEventType,
    ClassificationLevel,
    RawEvent,
)
from shield_audit.audit.recorder import AuditRecorder

logger = logging.getLogger(__name__)

REASON_UNKNOWN_RESOURCE_TYPE = "unknown_resource_type"
REASON_INSUFFICIENT_PERMISSIONS = "insufficient_permissions"
REASON_INVALID_REQUEST = "invalid_request"

# Stand-ins written to the failed_access entry when the request left these blank.
UNSPECIFIED_ACTION = "unspecified"
UNSPECIFIED_RESOURCE_TYPE = "unknown"


class RoleResolver(Protocol):
    """Maps a principal id to its role. Returns None when no role is known."""

    def resolve_role(self, principal_id: str) -> str | None: ...


class StaticRoleResolver:
    """RoleResolver backed by a fixed principal -> role mapping."""

    def __init__(self, roles: dict[str, str] | None = None) -> None:
        self._roles = dict(roles or {})

    def resolve_role(self, principal_id: str) -> str | None:
        return self._roles.get(principal_id)


class AccessControlEvaluator:
    """Role-based access checks with audit side effects.

    Args:
        recorder: Recorder used for the audit entries of each decision
        registry: Classification registry (process-wide registry if None)
        role_resolver: Resolver used by check_principal_access()
        lowest_privilege_role: Role substituted when none can be resolved
        audited_levels: Classification levels whose allows are recorded
    """

    def __init__(
        self,
        recorder: AuditRecorder,
        registry: ClassificationRegistry | None = None,
        role_resolver: RoleResolver | None = None,
        lowest_privilege_role: str = "anonymous",
        audited_levels: frozenset[ClassificationLevel] = frozenset(
            {ClassificationLevel.RESTRICTED}
        ),
    ) -> None:
        self._recorder = recorder
        self._registry = registry or get_registry()
        self._role_resolver = role_resolver
        self._lowest_privilege_role = lowest_privilege_role
        self._audited_levels = audited_levels
        self._allowed_seen: set[tuple[str, str, str | None, str]] = set()

    async def check_access(
        self,
        principal_role: str | None,
        resource_type: str,
        action: str,
        resource_id: str | None = None,
        user_id: str | None = None,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> AccessDecision:
        """Check whether ``principal_role`` may perform ``action``.

        Args:
            principal_role: Role of the principal (lowest privilege if empty)
            resource_type: Resource type being accessed
            action: Action verb (read, update, delete, ...)
            resource_id: Identifier of the specific resource, if any
            user_id: Principal id written to the audit entry (role if None)
            ip_address: Client address for the audit entry
            user_agent: Client user agent for the audit entry

        Returns:
            AccessDecision with ``reason`` set on deny
        """
        role = (principal_role or "").strip() or self._lowest_privilege_role
        actor = (user_id or "").strip() or role

        if not (action or "").strip() or not (resource_type or "").strip():
            decision = AccessDecision(allowed=False, reason=REASON_INVALID_REQUEST)
            await self._record_denial(
                decision,
                actor,
                role,
                (resource_type or "").strip() or UNSPECIFIED_RESOURCE_TYPE,
                resource_id,
                (action or "").strip() or UNSPECIFIED_ACTION,
                ip_address,
                user_agent,
            )
            return decision

        try:
            classification = self._registry.classify(resource_type)
        except UnknownResourceTypeError:
            decision = AccessDecision(allowed=False, reason=REASON_UNKNOWN_RESOURCE_TYPE)
            await self._record_denial(
                decision, actor, role, resource_type, resource_id, action, ip_address, user_agent
            )
            return decision

        if role not in classification.access_controls:
            decision = AccessDecision(allowed=False, reason=REASON_INSUFFICIENT_PERMISSIONS)
            await self._record_denial(
                decision, actor, role, resource_type, resource_id, action, ip_address, user_agent
            )
            return decision

        decision = AccessDecision(allowed=True)
        key = (role, resource_type, resource_id, action)
        if classification.level in self._audited_levels and key not in self._allowed_seen:
            self._allowed_seen.add(key)
            await self._recorder.record(
                RawEvent(
                    event_type=AuditEventType.DATA_ACCESS.value,
                    user_id=actor,
                    action=action,
                    resource_type=resource_type,
                    resource_id=resource_id,
                    ip_address=ip_address,
                    user_agent=user_agent,
                    success=True,
                    details={"role": role, "classification_level": classification.level.value},
                )
            )
        return decision

    async def check_principal_access(
        self,
        principal_id: str,
        resource_type: str,
        action: str,
        resource_id: str | None = None,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> AccessDecision:
        """Resolve the principal's role, then check access."""
        return await self.check_access(
            self.resolve_role(principal_id),
            resource_type,
            action,
            resource_id=resource_id,
            user_id=principal_id,
            ip_address=ip_address,
            user_agent=user_agent,
        )

    def resolve_role(self, principal_id: str) -> str:
        """Role of ``principal_id``, or the lowest-privilege role."""
        if self._role_resolver is None:
            return self._lowest_privilege_role
        try:
            role = self._role_resolver.resolve_role(principal_id)
        except LookupError:
            logger.info(f"No role found for principal {principal_id}")
            role = None
        return role or self._lowest_privilege_role

    async def _record_denial(
        self,
        decision: AccessDecision,
        actor: str,
        role: str,
        resource_type: str,
        resource_id: str | None,
        action: str,
        ip_address: str | None,
        user_agent: str | None,
    ) -> None:
        logger.info(
            f"Access denied: role={role} resource_type={resource_type} "
            f"action={action} reason={decision.reason}"
        )
        await self._recorder.record(
            RawEvent(
                event_type=AuditEventType.FAILED_ACCESS.value,
                user_id=actor,
                action=action,
                resource_type=resource_type,
                resource_id=resource_id,
                ip_address=ip_address,
                user_agent=user_agent,
                success=False,
                details={"role": role, "reason": decision.reason},
            )
        )
