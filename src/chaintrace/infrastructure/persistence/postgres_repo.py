import asyncio
import logging
from contextlib import contextmanager
from typing import List, Optional

import psycopg2
from psycopg2.extras import Json, execute_values

from chaintrace.core.amounts import format_amount
from chaintrace.core.entities.chain import Chain
from chaintrace.core.entities.portfolio import PortfolioSnapshot
from chaintrace.core.entities.transfer import TokenSummary, TransferEvent
from chaintrace.core.interfaces.store import ITransactionStore
from chaintrace.core.use_cases.summary import fold_summary

logger = logging.getLogger(__name__)

EVENT_COLUMNS = (
    "wallet", "chain", "transaction_id", "asset_id", "sequence_ref", "observed_at", "direction",
    "asset_symbol", "asset_name", "asset_decimals", "counterparty_from", "counterparty_to",
    "amount", "fee", "status", "raw",
)

SUMMARY_COLUMNS = (
    "wallet", "chain", "asset_id", "asset_symbol", "asset_name", "total_received", "total_sent",
    "current_balance", "transaction_count", "first_transaction_at", "last_transaction_at",
)


def escape_like(text: str) -> str:
    """Makes `%` and `_` match literally inside an ILIKE pattern."""
    return text.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


class PostgresRepo(ITransactionStore):
    """
    psycopg2 store, one short-lived connection per call. The blocking work
    runs in a worker thread so the event loop stays free.
    """

    def __init__(self, dsn: str):
        self.dsn = dsn
        self._init_db()

    @contextmanager
    def _cursor(self):
        conn = psycopg2.connect(self.dsn)
        try:
            cur = conn.cursor()
            try:
                yield cur
                conn.commit()
            except Exception:
                conn.rollback()
                raise
            finally:
                cur.close()
        finally:
            conn.close()

    def _init_db(self):
        with self._cursor() as cur:
            cur.execute("""
                CREATE TABLE IF NOT EXISTS transfer_events (
                    wallet VARCHAR NOT NULL,
                    chain VARCHAR NOT NULL,
                    transaction_id VARCHAR NOT NULL,
                    asset_id VARCHAR NOT NULL,
                    sequence_ref BIGINT,
                    observed_at BIGINT,
                    direction VARCHAR,
                    asset_symbol VARCHAR,
                    asset_name VARCHAR,
                    asset_decimals INTEGER,
                    counterparty_from VARCHAR,
                    counterparty_to VARCHAR,
                    amount NUMERIC NOT NULL,
                    fee NUMERIC NOT NULL DEFAULT 0,
                    status VARCHAR,
                    raw JSONB,
                    PRIMARY KEY (wallet, chain, transaction_id, asset_id)
                );
            """)
            cur.execute("""
                CREATE INDEX IF NOT EXISTS transfer_events_recent
                ON transfer_events (wallet, chain, observed_at DESC);
            """)
            cur.execute("""
                CREATE TABLE IF NOT EXISTS token_summaries (
                    wallet VARCHAR NOT NULL,
                    chain VARCHAR NOT NULL,
                    asset_id VARCHAR NOT NULL,
                    asset_symbol VARCHAR,
                    asset_name VARCHAR,
                    total_received NUMERIC NOT NULL DEFAULT 0,
                    total_sent NUMERIC NOT NULL DEFAULT 0,
                    current_balance NUMERIC NOT NULL DEFAULT 0,
                    transaction_count INTEGER NOT NULL DEFAULT 0,
                    first_transaction_at BIGINT,
                    last_transaction_at BIGINT,
                    PRIMARY KEY (wallet, chain, asset_id)
                );
            """)
            cur.execute("""
                CREATE TABLE IF NOT EXISTS portfolio_snapshots (
                    wallet VARCHAR PRIMARY KEY,
                    schema_version INTEGER NOT NULL,
                    payload JSONB NOT NULL,
                    updated_at BIGINT
                );
            """)
        logger.info("Postgres schema ready.")

    # Events

    def _event_row(self, e: TransferEvent) -> tuple:
        return (
            e.wallet, e.chain.value, e.transaction_id, e.asset_id, e.sequence_ref, e.observed_at,
            e.direction.value, e.asset_symbol, e.asset_name, e.asset_decimals, e.counterparty_from,
            e.counterparty_to, e.amount, e.fee, e.status.value, Json(e.raw),
        )

    def _upsert_events(self, events: List[TransferEvent]):
        updates = ", ".join(f"{c} = EXCLUDED.{c}" for c in EVENT_COLUMNS[4:])
        query = f"""
            INSERT INTO transfer_events ({", ".join(EVENT_COLUMNS)})
            VALUES %s
            ON CONFLICT (wallet, chain, transaction_id, asset_id) DO UPDATE SET {updates}
        """
        # one statement cannot touch the same key twice
        rows = {e.key: self._event_row(e) for e in events}
        with self._cursor() as cur:
            execute_values(cur, query, list(rows.values()))

    async def upsert_event(self, event: TransferEvent) -> None:
        await asyncio.to_thread(self._upsert_events, [event])

    async def upsert_events(self, events: List[TransferEvent]) -> None:
        if events:
            await asyncio.to_thread(self._upsert_events, events)

    def _has_events(self, wallet: str, chain: Chain) -> bool:
        with self._cursor() as cur:
            cur.execute(
                "SELECT 1 FROM transfer_events WHERE wallet = %s AND chain = %s LIMIT 1",
                (wallet, chain.value)
            )
            return cur.fetchone() is not None

    async def has_events(self, wallet: str, chain: Chain) -> bool:
        return await asyncio.to_thread(self._has_events, wallet, chain)

    def _query_events(self, wallet, chain, token_id=None, limit=None, search_text=None) -> List[TransferEvent]:
        query = f"""
            SELECT {", ".join(EVENT_COLUMNS)}
            FROM transfer_events
            WHERE wallet = %s AND chain = %s
        """
        params = [wallet, chain.value]

        if token_id is not None:
            query += " AND asset_id = %s"
            params.append(token_id)
        if search_text:
            query += " AND (asset_symbol ILIKE %s ESCAPE '\\' OR asset_name ILIKE %s ESCAPE '\\')"
            pattern = f"%{escape_like(search_text)}%"
            params.extend([pattern, pattern])
        query += " ORDER BY observed_at DESC NULLS LAST, transaction_id"
        if limit is not None:
            query += " LIMIT %s"
            params.append(limit)

        with self._cursor() as cur:
            cur.execute(query, params)
            rows = cur.fetchall()

        events = []
        for row in rows:
            data = dict(zip(EVENT_COLUMNS, row))
            data["amount"] = format_amount(data["amount"])
            data["fee"] = format_amount(data["fee"])
            data["raw"] = data["raw"] or {}
            events.append(TransferEvent(**data))
        return events

    async def query_events(
        self,
        wallet: str,
        chain: Chain,
        token_id: Optional[str] = None,
        limit: Optional[int] = None,
        search_text: Optional[str] = None
    ) -> List[TransferEvent]:
        return await asyncio.to_thread(self._query_events, wallet, chain, token_id, limit, search_text)

    # Summaries

    def _upsert_summary(self, wallet, chain, asset_id, symbol, name) -> TokenSummary:
        events = self._query_events(wallet, chain, token_id=asset_id)
        summary = fold_summary(wallet, chain, asset_id, events, symbol, name)
        updates = ", ".join(f"{c} = EXCLUDED.{c}" for c in SUMMARY_COLUMNS[3:])
        with self._cursor() as cur:
            cur.execute(
                f"""
                INSERT INTO token_summaries ({", ".join(SUMMARY_COLUMNS)})
                VALUES ({", ".join(["%s"] * len(SUMMARY_COLUMNS))})
                ON CONFLICT (wallet, chain, asset_id) DO UPDATE SET {updates}
                """,
                (
                    wallet, chain.value, asset_id, summary.asset_symbol, summary.asset_name,
                    summary.total_received, summary.total_sent, summary.current_balance,
                    summary.transaction_count, summary.first_transaction_at, summary.last_transaction_at,
                )
            )
        return summary

    async def upsert_summary(
        self,
        wallet: str,
        chain: Chain,
        asset_id: str,
        symbol: Optional[str],
        name: Optional[str]
    ) -> TokenSummary:
        return await asyncio.to_thread(self._upsert_summary, wallet, chain, asset_id, symbol, name)

    def _get_summaries(self, wallet: str, chain: Chain) -> List[TokenSummary]:
        with self._cursor() as cur:
            cur.execute(
                f"""
                SELECT {", ".join(SUMMARY_COLUMNS)}
                FROM token_summaries
                WHERE wallet = %s AND chain = %s
                ORDER BY current_balance DESC
                """,
                (wallet, chain.value)
            )
            rows = cur.fetchall()

        summaries = []
        for row in rows:
            data = dict(zip(SUMMARY_COLUMNS, row))
            for column in ("total_received", "total_sent", "current_balance"):
                data[column] = format_amount(data[column])
            summaries.append(TokenSummary(**data))
        return summaries

    async def get_summaries(self, wallet: str, chain: Chain) -> List[TokenSummary]:
        return await asyncio.to_thread(self._get_summaries, wallet, chain)

    def _clear(self, wallet: str, chain: Optional[Chain]) -> int:
        scope = " AND chain = %s" if chain is not None else ""
        params = (wallet, chain.value) if chain is not None else (wallet,)
        with self._cursor() as cur:
            cur.execute("DELETE FROM transfer_events WHERE wallet = %s" + scope, params)
            removed = cur.rowcount
            cur.execute("DELETE FROM token_summaries WHERE wallet = %s" + scope, params)
            if chain is None:
                cur.execute("DELETE FROM portfolio_snapshots WHERE wallet = %s", (wallet,))
        logger.info(f"Cleared {removed} events for {wallet} ({chain.value if chain else 'all chains'})")
        return removed

    async def clear(self, wallet: str, chain: Optional[Chain] = None) -> int:
        return await asyncio.to_thread(self._clear, wallet, chain)

    # Snapshots

    def _save_snapshot(self, wallet: str, snapshot: PortfolioSnapshot):
        with self._cursor() as cur:
            cur.execute(
                """
                INSERT INTO portfolio_snapshots (wallet, schema_version, payload, updated_at)
                VALUES (%s, %s, %s, %s)
                ON CONFLICT (wallet) DO UPDATE SET
                    schema_version = EXCLUDED.schema_version,
                    payload = EXCLUDED.payload,
                    updated_at = EXCLUDED.updated_at
                """,
                (wallet, snapshot.schema_version, Json(snapshot.model_dump(mode="json")), snapshot.last_updated)
            )

    async def save_snapshot(self, wallet: str, snapshot: PortfolioSnapshot) -> None:
        await asyncio.to_thread(self._save_snapshot, wallet, snapshot)

    def _load_snapshot(self, wallet: str) -> Optional[dict]:
        with self._cursor() as cur:
            cur.execute("SELECT payload FROM portfolio_snapshots WHERE wallet = %s", (wallet,))
            row = cur.fetchone()
        return row[0] if row else None

    async def load_snapshot(self, wallet: str) -> Optional[dict]:
        return await asyncio.to_thread(self._load_snapshot, wallet)

    def _delete_snapshot(self, wallet: str):
        with self._cursor() as cur:
            cur.execute("DELETE FROM portfolio_snapshots WHERE wallet = %s", (wallet,))

    async def delete_snapshot(self, wallet: str) -> None:
        await asyncio.to_thread(self._delete_snapshot, wallet)
