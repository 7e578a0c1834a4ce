from __future__ import annotations

from gold_advisor.config import Profile
from gold_advisor.models import PortfolioStats


def compute_portfolio_stats(profile: Profile, price: float) -> PortfolioStats:
    """Mark-to-market and fee-inclusive liquidation view of the profile at ``price``."""
    cost_per_gram_buy = price * (1 + profile.buy_fee_pct)
    proceeds_per_gram_sell = price * (1 - profile.sell_fee_pct)
    basis_gross = profile.gold_grams * profile.avg_buy_price
    basis_with_buy_fee = basis_gross * (1 + profile.buy_fee_pct)
    gold_mark_value = profile.gold_grams * price
    gold_liquidation_value = profile.gold_grams * proceeds_per_gram_sell
    net_pnl = gold_liquidation_value - basis_with_buy_fee

    break_even = None
    if profile.avg_buy_price > 0 and profile.sell_fee_pct < 1:
        break_even = profile.avg_buy_price * (1 + profile.buy_fee_pct) / (1 - profile.sell_fee_pct)

    return PortfolioStats(
        cash_amount=profile.cash_amount,
        gold_grams=profile.gold_grams,
        avg_buy_price=profile.avg_buy_price,
        buy_fee_pct=profile.buy_fee_pct,
        sell_fee_pct=profile.sell_fee_pct,
        basis_gross=basis_gross,
        basis_with_buy_fee=basis_with_buy_fee,
        gold_mark_value=gold_mark_value,
        gold_liquidation_value=gold_liquidation_value,
        portfolio_mark_value=profile.cash_amount + gold_mark_value,
        portfolio_liquidation_value=profile.cash_amount + gold_liquidation_value,
        net_pnl_after_fees=net_pnl,
        net_pnl_pct=net_pnl / basis_with_buy_fee if basis_with_buy_fee > 0 else None,
        break_even_sell_price=break_even,
        affordable_grams=profile.cash_amount / cost_per_gram_buy if cost_per_gram_buy > 0 else 0.0,
        cost_per_gram_buy=cost_per_gram_buy,
        proceeds_per_gram_sell=proceeds_per_gram_sell,
    )
