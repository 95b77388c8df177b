from __future__ import annotations

import threading
from collections import defaultdict
from typing import Any, Dict, List, Set, Tuple

from authplane.logging import get_logger

logger = get_logger(__name__)

# A policy with this action grants every action on its resource
WILDCARD_ACTION = "manage"


def user_subject(tenant_slug: str, user_id: int) -> str:
    return f"{tenant_slug}:{user_id}"


def role_subject(tenant_slug: str, role_name: str) -> str:
    return f"{tenant_slug}:{role_name}"


class PolicyEngine:
    """In-process RBAC with tenant-scoped subjects.

    Policies are ``(subject, resource, action)`` triples and groupings map a
    user subject onto role subjects. Role subjects may themselves be granted
    other roles; lookups follow groupings transitively.
    """

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._policies: Set[Tuple[str, str, str]] = set()
        self._groupings: Dict[str, Set[str]] = defaultdict(set)

    # -- decisions -----------------------------------------------------------

    def _expand(self, subject: str) -> Set[str]:
        seen = {subject}
        frontier = [subject]
        while frontier:
            current = frontier.pop()
            for role in self._groupings.get(current, ()):
                if role not in seen:
                    seen.add(role)
                    frontier.append(role)
        return seen

    def enforce(self, subject: str, resource: str, action: str) -> bool:
        try:
            with self._lock:
                subjects = self._expand(subject)
                for sub, obj, act in self._policies:
                    if sub in subjects and obj == resource and act in (action, WILDCARD_ACTION):
                        return True
            return False
        except Exception as exc:
            logger.error(
                "policy_enforce_failed",
                subject=subject,
                resource=resource,
                action=action,
                error=str(exc),
            )
            return False

    # -- loading -------------------------------------------------------------

    def load_from_store(self, store: Any) -> int:
        """Rebuild every policy and grouping from the credential store.

        Returns the number of policies loaded.
        """
        policies: Set[Tuple[str, str, str]] = set()
        groupings: Dict[str, Set[str]] = defaultdict(set)
        for company in store.list_companies():
            if not company.is_active:
                continue
            roles = store.list_company_roles(company.id)
            for role in roles:
                for permission in store.list_permissions(role.permission_ids):
                    policies.add(
                        (role_subject(company.slug, role.name), permission.resource, permission.action)
                    )
            for user_id, role_name in store.list_company_role_assignments(company.id):
                groupings[user_subject(company.slug, user_id)].add(
                    role_subject(company.slug, role_name)
                )
        with self._lock:
            self._policies = policies
            self._groupings = groupings
        logger.info("policies_loaded", policies=len(policies), subjects=len(groupings))
        return len(policies)

    # -- management ----------------------------------------------------------

    def add_policy(self, subject: str, resource: str, action: str) -> bool:
        rule = (subject, resource, action)
        with self._lock:
            if rule in self._policies:
                return False
            self._policies.add(rule)
        logger.info("policy_added", subject=subject, resource=resource, action=action)
        return True

    def remove_policy(self, subject: str, resource: str, action: str) -> bool:
        rule = (subject, resource, action)
        with self._lock:
            if rule not in self._policies:
                return False
            self._policies.discard(rule)
        logger.info("policy_removed", subject=subject, resource=resource, action=action)
        return True

    def add_role_for_user(self, subject: str, role: str) -> bool:
        with self._lock:
            if role in self._groupings.get(subject, ()):
                return False
            self._groupings[subject].add(role)
        logger.info("role_granted", subject=subject, role=role)
        return True

    def delete_role_for_user(self, subject: str, role: str) -> bool:
        with self._lock:
            roles = self._groupings.get(subject)
            if not roles or role not in roles:
                return False
            roles.discard(role)
            if not roles:
                del self._groupings[subject]
        logger.info("role_revoked", subject=subject, role=role)
        return True

    # -- introspection -------------------------------------------------------

    def get_roles_for_user(self, subject: str) -> List[str]:
        with self._lock:
            return sorted(self._groupings.get(subject, ()))

    def get_users_for_role(self, role: str) -> List[str]:
        with self._lock:
            return sorted(sub for sub, roles in self._groupings.items() if role in roles)

    def get_all_subjects(self) -> List[str]:
        with self._lock:
            return sorted({sub for sub, _, _ in self._policies})

    def get_all_objects(self) -> List[str]:
        with self._lock:
            return sorted({obj for _, obj, _ in self._policies})

    def get_all_actions(self) -> List[str]:
        with self._lock:
            return sorted({act for _, _, act in self._policies})
