"""Ordered refund submission strategies.

Each strategy takes ``(payment_id, amount_minor, notes=...)`` and returns the
gateway refund entity or raises GatewayError. They are tried in order and the
first success wins. The default order (instant, then normal, then the SDK
transport) comes from how the gateway behaves in practice and is configurable
through ``REFUND_STRATEGY_ORDER``.
"""
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, Tuple
from storefront.config.settings import config_settings
from storefront.payments.gateway import GatewayError, RazorpayGateway
from storefront.refunds.constants import logger

RefundStrategy = Callable[..., Awaitable[dict]]


@dataclass
class RefundOutcome:
    refund_id: Optional[str] = None
    strategy: Optional[str] = None
    errors: List[Tuple[str, GatewayError]] = field(default_factory=list)

    @property
    def succeeded(self) -> bool:
        return self.refund_id is not None

    @property
    def last_error(self) -> Optional[GatewayError]:
        return self.errors[-1][1] if self.errors else None


def build_strategies(gateway: RazorpayGateway, order: Optional[Sequence[str]] = None) -> List[Tuple[str, RefundStrategy]]:
    available: Dict[str, RefundStrategy] = {
        "instant": gateway.create_instant_refund,
        "normal": gateway.create_refund,
        "sdk": gateway.create_refund_via_sdk,
    }
    names = list(order if order is not None else config_settings.REFUND_STRATEGY_ORDER)
    unknown = [n for n in names if n not in available]
    if unknown or not names:
        raise ValueError(f"invalid refund strategy order {names!r}, choose from {sorted(available)}")
    return [(n, available[n]) for n in names]


async def run_refund_strategies(strategies: Sequence[Tuple[str, RefundStrategy]], payment_id: str,
                                amount_minor: int, notes: Optional[dict] = None,
                                context: Optional[Dict[str, Any]] = None) -> RefundOutcome:
    outcome = RefundOutcome()
    ctx = dict(context or {})

    for name, strategy in strategies:
        try:
            resp = await strategy(payment_id, amount_minor, notes=notes)
        except GatewayError as e:
            outcome.errors.append((name, e))
            logger.info("refund.strategy_rejected", extra={
                **ctx, "strategy": name, "payment_id": payment_id,
                "amount_minor": amount_minor, **e.diagnostics(),
            })
            continue

        refund_id = resp.get("id") if isinstance(resp, dict) else None
        if not refund_id:
            outcome.errors.append((name, GatewayError("refund accepted without an id", body=resp)))
            logger.warning("refund.strategy_missing_id", extra={**ctx, "strategy": name, "payment_id": payment_id})
            continue

        outcome.refund_id = refund_id
        outcome.strategy = name
        logger.info("refund.strategy_succeeded", extra={
            **ctx, "strategy": name, "payment_id": payment_id,
            "refund_id": refund_id, "amount_minor": amount_minor,
        })
        return outcome

    logger.error("refund.all_strategies_failed", extra={
        **ctx, "payment_id": payment_id, "amount_minor": amount_minor,
        "attempted": [n for n, _ in outcome.errors],
        **(outcome.last_error.diagnostics() if outcome.last_error else {}),
    })
    return outcome
