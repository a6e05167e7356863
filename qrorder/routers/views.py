from __future__ import annotations

from qrorder.models.order import Order
from qrorder.models.tokens import RewardRule, TokenRedemption, TokenTransaction, TokenType
from qrorder.services.money import to_money


def money(value) -> str:
    return str(to_money(value))


def order_out(order: Order) -> dict:
    return {
        "id": order.id,
        "merchant_id": order.merchant_id,
        "status": order.status,
        "total_amount": money(order.total_amount),
        "discount_amount": money(order.discount_amount),
        "final_amount": money(order.final_amount),
        "payment_intent_id": order.payment_intent_id,
        "created_at": order.created_at.isoformat() if order.created_at else None,
        "paid_at": order.paid_at.isoformat() if order.paid_at else None,
        "items": [
            {
                "product_id": item.product_id,
                "quantity": item.quantity,
                "price": money(item.price),
                "subtotal": money(item.price * item.quantity),
            }
            for item in order.items
        ],
    }


def transaction_out(tx: TokenTransaction) -> dict:
    return {
        "id": tx.id,
        "token_type_id": tx.token_type_id,
        "amount": tx.amount,
        "transaction_type": tx.transaction_type,
        "source_type": tx.source_type,
        "source_id": tx.source_id,
        "order_id": tx.order_id,
        "description": tx.description,
        "balance_after": tx.balance_after,
        "created_at": tx.created_at.isoformat(),
        "expires_at": tx.expires_at.isoformat() if tx.expires_at else None,
    }


def redemption_out(r: TokenRedemption) -> dict:
    return {
        "id": r.id,
        "order_id": r.order_id,
        "token_type_id": r.token_type_id,
        "amount": r.amount,
        "discount_amount": money(r.discount_amount),
        "status": r.status,
    }


def token_type_out(t: TokenType) -> dict:
    return {"id": t.id, "name": t.name, "symbol": t.symbol, "description": t.description, "is_active": t.is_active}


def rule_out(rule: RewardRule) -> dict:
    return {
        "id": rule.id,
        "token_type_id": rule.token_type_id,
        "name": rule.name,
        "description": rule.description,
        "trigger_type": rule.trigger_type,
        "trigger_value": money(rule.trigger_value),
        "reward_amount": rule.reward_amount,
        "reward_type": rule.reward_type,
        "is_active": rule.is_active,
    }
