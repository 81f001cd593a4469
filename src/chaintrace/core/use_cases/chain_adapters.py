"""
Chain adapters: turn one raw on-chain transaction into TransferEvents.

One adapter per chain family. `decode` is pure: it never calls out, and
everything it needs besides the raw record (token decimals for EVM logs)
is passed in. Within one decode pass every delta is merged by asset id, so
a transaction yields at most one event per asset for the wallet.
"""
import logging
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass
from decimal import Decimal, localcontext
from typing import Any, Dict, List, Mapping, Optional, Set, Tuple, Type

from chaintrace.core.amounts import (
    DEFAULT_DUST_THRESHOLD,
    EXACT,
    ZERO,
    format_amount,
    is_dust,
    parse_int,
    scale,
    to_decimal,
)
from chaintrace.core.entities.chain import Chain, ChainFamily, NATIVE_ASSET_ID
from chaintrace.core.entities.transfer import Direction, TransferEvent, TxStatus
from chaintrace.core.exceptions import DecodeAmbiguous

logger = logging.getLogger(__name__)

# keccak256("Transfer(address,address,uint256)")
ERC20_TRANSFER_TOPIC = "0xddf252ad1be2c89b69c2b068fc378daa952ba7f163c4a11628f55a4df523b3ef"
DEFAULT_EVM_TOKEN_DECIMALS = 18
SPL_TRANSFER_TYPES = ("transfer", "transferChecked")
EVM_ADDRESS_RE = re.compile(r"^0x[0-9a-fA-F]{40}$")
SOLANA_ADDRESS_RE = re.compile(r"^[1-9A-HJ-NP-Za-km-z]{32,44}$")


@dataclass
class _Delta:
    amount: Decimal
    decimals: Optional[int]
    counterparty_from: Optional[str] = None
    counterparty_to: Optional[str] = None


def _accumulate(deltas: Dict[str, _Delta], asset_id: str, amount: Decimal, decimals: Optional[int],
                counterparty_from: Optional[str], counterparty_to: Optional[str]) -> None:
    current = deltas.get(asset_id)
    if current is None:
        deltas[asset_id] = _Delta(amount, decimals, counterparty_from, counterparty_to)
    else:
        current.amount += amount


class ChainAdapter(ABC):
    family: ChainFamily

    def __init__(self, chain: Chain, dust_threshold: Decimal = DEFAULT_DUST_THRESHOLD):
        if chain.family != self.family:
            raise ValueError(f"{type(self).__name__} cannot decode {chain.value}")
        self.chain = chain
        self.dust_threshold = dust_threshold

    @abstractmethod
    def normalize_address(self, address: str) -> str:
        pass

    @abstractmethod
    def accepts_address(self, address: str) -> bool:
        """Whether the address is well-formed for this chain family."""
        pass

    @abstractmethod
    def token_ids(self, raw: Dict[str, Any]) -> Set[str]:
        """Token ids whose decimals must be resolved before `decode`."""
        pass

    def decode(
        self,
        raw: Dict[str, Any],
        wallet: str,
        decimals: Optional[Mapping[str, int]] = None
    ) -> List[TransferEvent]:
        """
        One event per asset whose net delta for `wallet` is above dust.
        `decimals` maps token ids to resolved decimals.
        """
        with localcontext(EXACT):
            return self._decode(raw, wallet, decimals or {})

    @abstractmethod
    def _decode(self, raw: Dict[str, Any], wallet: str, decimals: Mapping[str, int]) -> List[TransferEvent]:
        pass

    def _build_events(
        self,
        deltas: Dict[str, _Delta],
        wallet: str,
        transaction_id: str,
        sequence_ref: Optional[int],
        observed_at: Optional[int],
        fee: Decimal,
        status: TxStatus,
        raw: Dict[str, Any]
    ) -> List[TransferEvent]:
        native = self.chain.native
        events = []
        for asset_id, delta in deltas.items():
            if is_dust(delta.amount, self.dust_threshold):
                logger.debug(f"Dropping dust delta {delta.amount} for {asset_id} in {transaction_id}")
                continue
            is_native = asset_id == NATIVE_ASSET_ID
            events.append(TransferEvent(
                wallet=wallet,
                chain=self.chain,
                transaction_id=transaction_id,
                sequence_ref=sequence_ref,
                observed_at=observed_at,
                direction=Direction.RECEIVE if delta.amount > 0 else Direction.SEND,
                asset_id=asset_id,
                asset_symbol=native.symbol if is_native else None,
                asset_name=native.name if is_native else None,
                asset_decimals=native.decimals if is_native else delta.decimals,
                counterparty_from=delta.counterparty_from,
                counterparty_to=delta.counterparty_to,
                amount=format_amount(delta.amount),
                fee=format_amount(fee),
                status=status,
                raw=raw
            ))
        return events


class EvmAdapter(ChainAdapter):
    """
    Account-model chains. Raw record:
        {"tx": eth_getTransactionByHash result,
         "receipt": eth_getTransactionReceipt result,
         "timestamp": block timestamp in seconds or None}
    """
    family = ChainFamily.EVM

    def normalize_address(self, address: str) -> str:
        return address.strip().lower()

    def accepts_address(self, address: str) -> bool:
        return bool(EVM_ADDRESS_RE.match(address.strip()))

    def token_ids(self, raw: Dict[str, Any]) -> Set[str]:
        return {address for address, _, _, _ in self._transfer_logs(raw)}

    def _decode(self, raw: Dict[str, Any], wallet: str, decimals: Mapping[str, int]) -> List[TransferEvent]:
        tx = raw.get("tx") or {}
        receipt = raw.get("receipt") or {}
        tx_hash = tx.get("hash") or receipt.get("transactionHash")
        if not tx_hash:
            raise DecodeAmbiguous("EVM record has no transaction hash")

        me = self.normalize_address(wallet)
        decimals = {k.lower(): v for k, v in decimals.items()}
        tx_from = (tx.get("from") or "").lower() or None
        tx_to = (tx.get("to") or "").lower() or None

        status = TxStatus.SUCCESS
        if receipt and parse_int(receipt.get("status", "0x1")) != 1:
            status = TxStatus.FAILED

        deltas: Dict[str, _Delta] = {}

        # A reverted transaction moves no value; only the fee is spent.
        value = parse_int(tx.get("value"))
        if value and status == TxStatus.SUCCESS:
            native_decimals = self.chain.native.decimals
            amount = ZERO
            if tx_to == me:
                amount += scale(value, native_decimals)
            if tx_from == me:
                amount -= scale(value, native_decimals)
            if tx_to == me or tx_from == me:
                _accumulate(deltas, NATIVE_ASSET_ID, amount, native_decimals, tx_from, tx_to)

        for contract, sender, recipient, raw_value in self._transfer_logs(raw):
            if me not in (sender, recipient):
                continue
            token_decimals = decimals.get(contract, DEFAULT_EVM_TOKEN_DECIMALS)
            amount = scale(raw_value, token_decimals)
            signed = ZERO
            if recipient == me:
                signed += amount
            if sender == me:
                signed -= amount
            _accumulate(deltas, contract, signed, token_decimals, sender, recipient)

        gas_used = parse_int(receipt.get("gasUsed"))
        gas_price = parse_int(receipt.get("effectiveGasPrice") or tx.get("gasPrice"))
        fee = scale(gas_used * gas_price, self.chain.native.decimals)

        block = tx.get("blockNumber") or receipt.get("blockNumber")
        timestamp = raw.get("timestamp")
        return self._build_events(
            deltas,
            wallet=me,
            transaction_id=tx_hash.lower(),
            sequence_ref=parse_int(block) if block is not None else None,
            observed_at=parse_int(timestamp) * 1000 if timestamp is not None else None,
            fee=fee,
            status=status,
            raw=raw
        )

    @staticmethod
    def _transfer_logs(raw: Dict[str, Any]) -> List[Tuple[str, str, str, int]]:
        receipt = raw.get("receipt") or {}
        transfers = []
        for log in receipt.get("logs") or []:
            topics = log.get("topics") or []
            # ERC-721 Transfer shares the topic but indexes the token id (4 topics)
            if len(topics) != 3 or str(topics[0]).lower() != ERC20_TRANSFER_TOPIC:
                continue
            try:
                transfers.append((
                    str(log["address"]).lower(),
                    "0x" + str(topics[1])[-40:].lower(),
                    "0x" + str(topics[2])[-40:].lower(),
                    parse_int(log.get("data") or "0x0"),
                ))
            except (KeyError, ValueError) as e:
                logger.warning(f"Skipping malformed Transfer log: {e}")
        return transfers


class SolanaAdapter(ChainAdapter):
    """
    Raw record is a `getTransaction` result requested with
    encoding=jsonParsed.

    Two detection paths are merged in one pass, keyed by mint:
    token-balance diffs are authoritative, and parsed SPL transfer
    instructions fill in mints whose balance diff is empty or dust
    (e.g. a token received and forwarded within the same transaction).
    """
    family = ChainFamily.SOLANA

    def normalize_address(self, address: str) -> str:
        # base58 is case-sensitive
        return address.strip()

    def accepts_address(self, address: str) -> bool:
        return bool(SOLANA_ADDRESS_RE.match(address.strip()))

    def token_ids(self, raw: Dict[str, Any]) -> Set[str]:
        meta = raw.get("meta") or {}
        balances = (meta.get("preTokenBalances") or []) + (meta.get("postTokenBalances") or [])
        mints = {b["mint"] for b in balances if b.get("mint")}
        for ins in self._instructions(raw):
            mint = ((ins.get("parsed") or {}).get("info") or {}).get("mint")
            if mint:
                mints.add(mint)
        return mints

    def _decode(self, raw: Dict[str, Any], wallet: str, decimals: Mapping[str, int]) -> List[TransferEvent]:
        transaction = raw.get("transaction") or {}
        signatures = transaction.get("signatures") or []
        signature = raw.get("signature") or (signatures[0] if signatures else None)
        if not signature:
            raise DecodeAmbiguous("Solana record has no signature")

        me = self.normalize_address(wallet)
        meta = raw.get("meta") or {}
        account_keys = [self._pubkey(k) for k in (transaction.get("message") or {}).get("accountKeys") or []]
        first_key = account_keys[0] if account_keys else None
        second_key = account_keys[1] if len(account_keys) > 1 else None

        deltas: Dict[str, _Delta] = {}

        index = self._wallet_index(account_keys, me)
        pre = meta.get("preBalances") or []
        post = meta.get("postBalances") or []
        if index is not None and index < len(pre) and index < len(post):
            native_decimals = self.chain.native.decimals
            lamports = int(post[index]) - int(pre[index])
            _accumulate(deltas, NATIVE_ASSET_ID, scale(lamports, native_decimals), native_decimals,
                        first_key, second_key)

        token_accounts = self._token_accounts(meta, account_keys)
        balance_deltas = self._balance_diff(meta, me)
        instruction_deltas = self._instruction_transfers(raw, me, token_accounts, decimals)

        for mint, delta in balance_deltas.items():
            if is_dust(delta.amount, self.dust_threshold):
                continue
            hint = instruction_deltas.get(mint)
            if hint is not None:
                delta.counterparty_from = hint.counterparty_from
                delta.counterparty_to = hint.counterparty_to
            else:
                delta.counterparty_from = first_key
                delta.counterparty_to = second_key
            deltas[mint] = delta
        for mint, delta in instruction_deltas.items():
            if mint not in deltas:
                deltas[mint] = delta

        block_time = raw.get("blockTime")
        return self._build_events(
            deltas,
            wallet=me,
            transaction_id=signature,
            sequence_ref=raw.get("slot"),
            observed_at=int(block_time) * 1000 if block_time is not None else None,
            fee=scale(meta.get("fee") or 0, self.chain.native.decimals),
            status=TxStatus.FAILED if meta.get("err") else TxStatus.SUCCESS,
            raw=raw
        )

    @staticmethod
    def _pubkey(key: Any) -> str:
        # jsonParsed returns {"pubkey": ..., "signer": ..., "writable": ...}
        return key.get("pubkey") if isinstance(key, dict) else str(key)

    @staticmethod
    def _wallet_index(account_keys: List[str], wallet: str) -> Optional[int]:
        if not account_keys:
            return 0
        try:
            return account_keys.index(wallet)
        except ValueError:
            return None

    @staticmethod
    def _ui_amount(balance: Dict[str, Any]) -> Tuple[Decimal, Optional[int]]:
        ui = balance.get("uiTokenAmount") or {}
        token_decimals = ui.get("decimals")
        if ui.get("amount") is not None and token_decimals is not None:
            return scale(ui["amount"], token_decimals), token_decimals
        return to_decimal(ui.get("uiAmountString")), token_decimals

    def _balance_diff(self, meta: Dict[str, Any], wallet: str) -> Dict[str, _Delta]:
        deltas: Dict[str, _Delta] = {}
        for sign, key in ((-1, "preTokenBalances"), (1, "postTokenBalances")):
            for balance in meta.get(key) or []:
                if balance.get("owner") != wallet or not balance.get("mint"):
                    continue
                amount, token_decimals = self._ui_amount(balance)
                _accumulate(deltas, balance["mint"], amount * sign, token_decimals, None, None)
                if token_decimals is not None:
                    deltas[balance["mint"]].decimals = token_decimals
        return deltas

    def _token_accounts(self, meta: Dict[str, Any], account_keys: List[str]) -> Dict[str, Dict[str, Any]]:
        """token account address -> {mint, owner, decimals}"""
        accounts: Dict[str, Dict[str, Any]] = {}
        for key in ("preTokenBalances", "postTokenBalances"):
            for balance in meta.get(key) or []:
                index = balance.get("accountIndex")
                if index is None or index >= len(account_keys):
                    continue
                accounts[account_keys[index]] = {
                    "mint": balance.get("mint"),
                    "owner": balance.get("owner"),
                    "decimals": (balance.get("uiTokenAmount") or {}).get("decimals"),
                }
        return accounts

    @staticmethod
    def _instructions(raw: Dict[str, Any]) -> List[Dict[str, Any]]:
        message = (raw.get("transaction") or {}).get("message") or {}
        instructions = list(message.get("instructions") or [])
        for inner in (raw.get("meta") or {}).get("innerInstructions") or []:
            instructions.extend(inner.get("instructions") or [])
        return [ins for ins in instructions if isinstance(ins.get("parsed"), dict)]

    def _instruction_transfers(
        self,
        raw: Dict[str, Any],
        wallet: str,
        token_accounts: Dict[str, Dict[str, Any]],
        decimals: Mapping[str, int]
    ) -> Dict[str, _Delta]:
        deltas: Dict[str, _Delta] = {}
        for ins in self._instructions(raw):
            if not str(ins.get("program", "")).startswith("spl-token"):
                continue
            parsed = ins["parsed"]
            if parsed.get("type") not in SPL_TRANSFER_TYPES:
                continue
            info = parsed.get("info") or {}
            source = info.get("source")
            destination = info.get("destination")
            authority = info.get("authority") or info.get("multisigAuthority")
            source_account = token_accounts.get(source) or {}
            destination_account = token_accounts.get(destination) or {}

            receiving = wallet in (destination, destination_account.get("owner"))
            sending = wallet in (source, authority, source_account.get("owner"))
            if receiving == sending:
                continue

            mint = info.get("mint") or source_account.get("mint") or destination_account.get("mint")
            token_amount = info.get("tokenAmount") or {}
            token_decimals = token_amount.get("decimals")
            if token_decimals is None:
                token_decimals = source_account.get("decimals")
            if token_decimals is None:
                token_decimals = destination_account.get("decimals")
            if token_decimals is None and mint:
                token_decimals = decimals.get(mint)
            raw_amount = token_amount.get("amount", info.get("amount"))
            if not mint or token_decimals is None or raw_amount is None:
                logger.debug(f"Ambiguous SPL transfer instruction skipped: {info}")
                continue

            amount = scale(raw_amount, token_decimals)
            _accumulate(deltas, mint, amount if receiving else -amount, token_decimals,
                        authority or source, destination)
        return deltas


ADAPTERS: Dict[ChainFamily, Type[ChainAdapter]] = {
    ChainFamily.EVM: EvmAdapter,
    ChainFamily.SOLANA: SolanaAdapter,
}


def build_adapter(chain: Chain, dust_threshold: Decimal = DEFAULT_DUST_THRESHOLD) -> ChainAdapter:
    return ADAPTERS[chain.family](chain, dust_threshold)
