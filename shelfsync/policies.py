"""Shop automation policies evaluated against outbound DAN events.

A policy names one event type, a list of conditions over the event payload
(all must hold) and a list of actions. Every evaluation of a matching policy
leaves a run log entry: ``triggered`` when the conditions held and the
actions ran, ``skipped`` when a condition failed, ``error`` when an action
raised.

Policies and run logs live in two JSON files under the DAN state directory::

    dan_policies.json       {shop_id: [PolicyDescriptor, ...]}
    dan_policy_runs.json    {shop_id: [PolicyRunLog, ...]}   newest first
"""

from __future__ import annotations

import logging
import uuid
from collections.abc import Awaitable, Callable
from enum import Enum
from pathlib import Path
from typing import Any

import httpx
from pydantic import Field

from .models import CamelModel, ShopContext, utc_now_iso
from .state import read_json, write_json

logger = logging.getLogger("shelfsync.policies")

POLICIES_FILE = "dan_policies.json"
POLICY_RUNS_FILE = "dan_policy_runs.json"
MAX_RUNS_PER_SHOP = 50
POLICY_TRIGGER_EVENT = "policy.trigger.executed"

Publisher = Callable[..., Awaitable[Any]]


class PolicyOperator(str, Enum):
    EQ = "eq"
    NEQ = "neq"
    GT = "gt"
    GTE = "gte"
    LT = "lt"
    LTE = "lte"
    INCLUDES = "includes"
    CONTAINS = "contains"


class PolicyActionType(str, Enum):
    NOTIFY = "notify"
    CREATE_DAN_EVENT = "create_dan_event"
    TAG_INVENTORY = "tag_inventory"
    CALL_WEBHOOK = "call_webhook"


class PolicyOutcome(str, Enum):
    TRIGGERED = "triggered"
    SKIPPED = "skipped"
    ERROR = "error"


class PolicyCondition(CamelModel):
    field: str
    operator: PolicyOperator
    value: Any = None


class PolicyAction(CamelModel):
    type: PolicyActionType
    params: dict[str, Any] = Field(default_factory=dict)


class PolicyDescriptor(CamelModel):
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    shop_id: str
    name: str
    description: str = ""
    event_type: str
    scope: str = "inventory"
    version: str = "1.0"
    enabled: bool = True
    conditions: list[PolicyCondition] = Field(default_factory=list)
    actions: list[PolicyAction] = Field(default_factory=list)
    author: str = "system"
    created_at: str = Field(default_factory=utc_now_iso)
    updated_at: str = Field(default_factory=utc_now_iso)


class PolicyRunLog(CamelModel):
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    policy_id: str
    shop_id: str
    event_type: str
    event_payload: dict[str, Any] = Field(default_factory=dict)
    outcome: PolicyOutcome
    notes: str = ""
    created_at: str = Field(default_factory=utc_now_iso)


def default_policy(shop: ShopContext) -> PolicyDescriptor:
    """Warn when a DAN offer is shared while fewer than 10 units are left."""
    return PolicyDescriptor(
        shop_id=shop.id,
        name="Auto-flag low inventory offers",
        description=(
            "Warns when a DAN offer is created with quantity below 10 units so the "
            "shop can replenish locally before sharing."
        ),
        event_type="inventory.offer.created",
        conditions=[
            PolicyCondition(field="quantity", operator=PolicyOperator.LT, value=10),
            PolicyCondition(field="shareScope", operator=PolicyOperator.INCLUDES, value="dan"),
        ],
        actions=[
            PolicyAction(
                type=PolicyActionType.NOTIFY,
                params={
                    "message": "DAN offer shared while stock is below 10 units. "
                    "Confirm replenishment or adjust sharing scope."
                },
            ),
            PolicyAction(
                type=PolicyActionType.CREATE_DAN_EVENT,
                params={"trigger": "policy.auto-alert", "shopName": shop.name or "unknown shop"},
            ),
        ],
    )


# ---------------------------------------------------------------------------
# Conditions
# ---------------------------------------------------------------------------


def value_at_path(payload: dict[str, Any], path: str) -> Any:
    """Value at a dotted ``path`` in ``payload``; None if any step is missing."""
    value: Any = payload
    for key in path.split("."):
        if not isinstance(value, dict) or key not in value:
            return None
        value = value[key]
    return value


def _is_number(value: Any) -> bool:
    return isinstance(value, int | float) and not isinstance(value, bool)


def condition_holds(condition: PolicyCondition, payload: dict[str, Any]) -> bool:
    actual = value_at_path(payload, condition.field)
    expected = condition.value
    op = condition.operator

    if op == PolicyOperator.EQ:
        return actual == expected
    if op == PolicyOperator.NEQ:
        return actual != expected
    if op in (PolicyOperator.INCLUDES, PolicyOperator.CONTAINS):
        if isinstance(actual, list):
            return expected in actual
        if isinstance(actual, str):
            return str(expected).lower() in actual.lower()
        return False

    if not _is_number(actual):
        return False
    try:
        bound = float(expected)
    except (TypeError, ValueError):
        return False
    if op == PolicyOperator.GT:
        return actual > bound
    if op == PolicyOperator.GTE:
        return actual >= bound
    if op == PolicyOperator.LT:
        return actual < bound
    return actual <= bound


# ---------------------------------------------------------------------------
# Storage
# ---------------------------------------------------------------------------


class PolicyStore:
    def __init__(self, state_dir: str | Path) -> None:
        state = Path(state_dir).expanduser()
        self.policies_path = state / POLICIES_FILE
        self.runs_path = state / POLICY_RUNS_FILE

    def policies(self, shop_id: str) -> list[PolicyDescriptor]:
        raw = read_json(self.policies_path, {}).get(shop_id, [])
        return [PolicyDescriptor.model_validate(entry) for entry in raw]

    def save_policies(self, shop_id: str, policies: list[PolicyDescriptor]) -> None:
        everything = read_json(self.policies_path, {})
        everything[shop_id] = [p.model_dump(by_alias=True, mode="json") for p in policies]
        write_json(self.policies_path, everything)

    def runs(self, shop_id: str) -> list[PolicyRunLog]:
        raw = read_json(self.runs_path, {}).get(shop_id, [])
        return [PolicyRunLog.model_validate(entry) for entry in raw]

    def record_run(self, run: PolicyRunLog) -> None:
        everything = read_json(self.runs_path, {})
        runs = [run.model_dump(by_alias=True, mode="json"), *everything.get(run.shop_id, [])]
        everything[run.shop_id] = runs[:MAX_RUNS_PER_SHOP]
        write_json(self.runs_path, everything)


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------


class PolicyEngine:
    """Evaluates a shop's policies against one event and runs their actions.

    ``publish`` is called as ``publish(shop, event_type, payload)`` for the
    ``create_dan_event`` action.
    """

    def __init__(
        self,
        store: PolicyStore,
        *,
        publish: Publisher | None = None,
        webhook_timeout: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.store = store
        self.publish = publish
        self._webhook_timeout = webhook_timeout
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    def seed_default_policy(self, shop: ShopContext) -> list[PolicyDescriptor]:
        """Give ``shop`` the default policy unless it already has policies."""
        existing = self.store.policies(shop.id)
        if existing:
            return existing
        seeded = [default_policy(shop)]
        self.store.save_policies(shop.id, seeded)
        logger.info("Seeded default DAN policy for shop %s", shop.id)
        return seeded

    def upsert_policy(self, policy: PolicyDescriptor) -> PolicyDescriptor:
        now = utc_now_iso()
        policies = self.store.policies(policy.shop_id)
        for index, existing in enumerate(policies):
            if existing.id == policy.id:
                stored = policy.model_copy(update={"updated_at": now})
                policies[index] = stored
                break
        else:
            stored = policy.model_copy(update={"created_at": now, "updated_at": now})
            policies.append(stored)
        self.store.save_policies(policy.shop_id, policies)
        return stored

    def policies_for_shop(self, shop_id: str | None) -> list[PolicyDescriptor]:
        if not shop_id:
            return []
        return self.store.policies(shop_id)

    def recent_runs(self, shop_id: str | None, limit: int = 20) -> list[PolicyRunLog]:
        if not shop_id:
            return []
        return self.store.runs(shop_id)[:limit]

    async def evaluate(
        self, shop: ShopContext, event_type: str, payload: dict[str, Any]
    ) -> list[PolicyRunLog]:
        """Run every enabled policy of ``shop`` listening for ``event_type``."""
        policies = self.seed_default_policy(shop)
        runs = []
        for policy in policies:
            if not policy.enabled or policy.event_type != event_type:
                continue
            if all(condition_holds(c, payload) for c in policy.conditions):
                run = PolicyRunLog(
                    policy_id=policy.id,
                    shop_id=shop.id,
                    event_type=event_type,
                    event_payload=payload,
                    outcome=PolicyOutcome.TRIGGERED,
                    notes=f"Policy {policy.name} triggered",
                )
                try:
                    for action in policy.actions:
                        await self._execute(action, policy, shop, event_type, payload)
                except Exception as e:
                    logger.warning("Policy %s action failed: %s", policy.id, e)
                    run.outcome = PolicyOutcome.ERROR
                    run.notes = f"Action error: {e}"
            else:
                run = PolicyRunLog(
                    policy_id=policy.id,
                    shop_id=shop.id,
                    event_type=event_type,
                    event_payload=payload,
                    outcome=PolicyOutcome.SKIPPED,
                    notes="Condition check failed",
                )
            self.store.record_run(run)
            runs.append(run)
        return runs

    async def _execute(
        self,
        action: PolicyAction,
        policy: PolicyDescriptor,
        shop: ShopContext,
        event_type: str,
        payload: dict[str, Any],
    ) -> None:
        params = action.params
        if action.type == PolicyActionType.NOTIFY:
            message = params.get("message") or (
                f'Policy "{policy.name}" triggered for event {event_type}'
            )
            logger.info("[policy %s] %s", policy.id, message)
        elif action.type == PolicyActionType.CREATE_DAN_EVENT:
            if self.publish is None:
                logger.debug("Policy %s has no publisher; event not created", policy.id)
                return
            await self.publish(
                shop,
                POLICY_TRIGGER_EVENT,
                {
                    "policyId": policy.id,
                    "policyName": policy.name,
                    "scope": policy.scope,
                    "trigger": params.get("trigger") or "policy.action",
                    "eventPayload": payload,
                },
            )
        elif action.type == PolicyActionType.TAG_INVENTORY:
            logger.debug("Policy %s tag_inventory queued: %s", policy.id, params)
        elif action.type == PolicyActionType.CALL_WEBHOOK:
            url = params.get("url")
            if not url:
                return
            if self._client is None:
                self._client = httpx.AsyncClient(
                    timeout=self._webhook_timeout, transport=self._transport
                )
            try:
                resp = await self._client.post(
                    url,
                    json={"policyId": policy.id, "policyName": policy.name, "payload": payload},
                )
                resp.raise_for_status()
            except httpx.HTTPError as e:
                logger.warning("Policy %s webhook %s failed: %s", policy.id, url, e)

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None
