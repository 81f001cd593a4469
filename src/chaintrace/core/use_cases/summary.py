from decimal import localcontext
from typing import Iterable, Optional

from chaintrace.core.amounts import EXACT, ZERO, format_amount, to_decimal
from chaintrace.core.entities.chain import Chain
from chaintrace.core.entities.transfer import TokenSummary, TransferEvent


def fold_summary(
    wallet: str,
    chain: Chain,
    asset_id: str,
    events: Iterable[TransferEvent],
    symbol: Optional[str] = None,
    name: Optional[str] = None
) -> TokenSummary:
    """
    Rebuilds a TokenSummary from every stored event of one asset.
    Positive amounts count as received, negative as sent.
    """
    received = ZERO
    sent = ZERO
    count = 0
    first_at = None
    last_at = None

    for event in events:
        amount = to_decimal(event.amount)
        with localcontext(EXACT):
            if amount > 0:
                received += amount
            elif amount < 0:
                sent -= amount
        count += 1
        symbol = symbol or event.asset_symbol
        name = name or event.asset_name
        if event.observed_at is not None:
            first_at = event.observed_at if first_at is None else min(first_at, event.observed_at)
            last_at = event.observed_at if last_at is None else max(last_at, event.observed_at)

    return TokenSummary(
        wallet=wallet,
        chain=chain,
        asset_id=asset_id,
        asset_symbol=symbol,
        asset_name=name,
        total_received=format_amount(received),
        total_sent=format_amount(sent),
        current_balance=format_amount(EXACT.subtract(received, sent)),
        transaction_count=count,
        first_transaction_at=first_at,
        last_transaction_at=last_at
    )
