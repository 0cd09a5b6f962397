"""
fantasyyc/contract.py - TournamentManager / PackOpener / NFT interaction via web3.py.

Reads tournament state, participants, locked lineups and card info, and sends
the one-shot finalizeWithPoints() transaction. The contracts own all prize and
lock accounting; this module only reads their state and submits scores.

Install: pip install fantasyyc
"""

import logging
from dataclasses import dataclass
from typing import Any

logger = logging.getLogger(__name__)

# Ledger status codes (uint8 in the Tournament struct)
STATUS_CREATED = 0
STATUS_ACTIVE = 1
STATUS_FINALIZED = 2
STATUS_CANCELLED = 3

TERMINAL_STATUSES = (STATUS_FINALIZED, STATUS_CANCELLED)

LINEUP_SIZE = 5
POINTS_SIZE = 19  # finalizeWithPoints(uint256, uint256[19])

# ABIs: subset needed for Python interaction.

_TOURNAMENT_COMPONENTS = [
    {"name": "id", "type": "uint256"},
    {"name": "registrationStart", "type": "uint256"},
    {"name": "startTime", "type": "uint256"},
    {"name": "endTime", "type": "uint256"},
    {"name": "prizePool", "type": "uint256"},
    {"name": "entryCount", "type": "uint256"},
    {"name": "status", "type": "uint8"},
]

TOURNAMENT_MANAGER_ABI = [
    {
        "type": "function",
        "name": "getTournament",
        "inputs": [{"name": "tournamentId", "type": "uint256"}],
        "outputs": [{"name": "", "type": "tuple", "components": _TOURNAMENT_COMPONENTS}],
        "stateMutability": "view",
    },
    {
        "type": "function",
        "name": "getTournamentParticipants",
        "inputs": [{"name": "tournamentId", "type": "uint256"}],
        "outputs": [{"name": "", "type": "address[]"}],
        "stateMutability": "view",
    },
    {
        "type": "function",
        "name": "getUserLineup",
        "inputs": [
            {"name": "tournamentId", "type": "uint256"},
            {"name": "user", "type": "address"},
        ],
        "outputs": [
            {
                "name": "",
                "type": "tuple",
                "components": [
                    {"name": "cardIds", "type": "uint256[5]"},
                    {"name": "owner", "type": "address"},
                    {"name": "timestamp", "type": "uint256"},
                    {"name": "cancelled", "type": "bool"},
                    {"name": "claimed", "type": "bool"},
                ],
            }
        ],
        "stateMutability": "view",
    },
    {
        "type": "function",
        "name": "finalizeWithPoints",
        "inputs": [
            {"name": "tournamentId", "type": "uint256"},
            {"name": "points", "type": f"uint256[{POINTS_SIZE}]"},
        ],
        "outputs": [],
        "stateMutability": "nonpayable",
    },
]

PACK_OPENER_ABI = [
    {
        "type": "function",
        "name": "activeTournamentId",
        "inputs": [],
        "outputs": [{"name": "", "type": "uint256"}],
        "stateMutability": "view",
    },
]

NFT_ABI = [
    {
        "type": "function",
        "name": "getCardInfo",
        "inputs": [{"name": "tokenId", "type": "uint256"}],
        "outputs": [
            {
                "name": "",
                "type": "tuple",
                "components": [
                    {"name": "startupId", "type": "uint256"},
                    {"name": "edition", "type": "uint256"},
                    {"name": "rarity", "type": "uint8"},
                    {"name": "multiplier", "type": "uint256"},
                    {"name": "isLocked", "type": "bool"},
                    {"name": "name", "type": "string"},
                ],
            }
        ],
        "stateMutability": "view",
    },
]


# ============================================================================
# Data Types
# ============================================================================


@dataclass
class LedgerTournament:
    """Tournament struct as the contract reports it."""

    id: int
    registration_start: int
    start_time: int
    end_time: int
    prize_pool: int  # wei
    entry_count: int
    status_code: int

    @property
    def is_terminal(self) -> bool:
        return self.status_code in TERMINAL_STATUSES


@dataclass
class Lineup:
    card_ids: list[int]
    owner: str
    timestamp: int
    cancelled: bool
    claimed: bool


@dataclass
class Card:
    token_id: int
    entity_id: int
    rarity: int
    name: str = ""
    edition: int = 0
    multiplier: int = 1  # contract's own value; scoring uses the configured table
    locked: bool = True


class LedgerError(RuntimeError):
    """A ledger read failed (RPC error, timeout, bad contract address)."""


class TransactionReverted(LedgerError):
    """The transaction was mined but reverted."""


def _require_web3():
    """Import and return web3, raising a clear error if not installed."""
    try:
        from web3 import Web3
        return Web3
    except ImportError:
        raise ImportError(
            "web3 is required for ledger operations. "
            "Install it with: pip install fantasyyc"
        )


class LedgerClient:
    """Reads and writes against the three deployed contracts.

    Args:
        rpc_url: JSON-RPC endpoint.
        tournament_manager: TournamentManager address.
        pack_opener: PackOpener address (owns the active tournament pointer).
        nft: Card NFT address.
        account: eth_account LocalAccount for finalize transactions, or None
            for a read-only client.
        request_timeout: Per-call HTTP timeout in seconds.
        tx_timeout: Seconds to wait for a transaction receipt.
        chain_id: Chain id signed into transactions (default: asked from the node).
    """

    def __init__(
        self,
        rpc_url: str,
        tournament_manager: str,
        pack_opener: str,
        nft: str,
        account=None,
        request_timeout: int = 20,
        tx_timeout: int = 120,
        chain_id: int | None = None,
    ):
        Web3 = _require_web3()
        self.w3 = Web3(Web3.HTTPProvider(rpc_url, request_kwargs={"timeout": request_timeout}))
        self.tournaments = self.w3.eth.contract(
            address=Web3.to_checksum_address(tournament_manager), abi=TOURNAMENT_MANAGER_ABI
        )
        self.pack_opener = self.w3.eth.contract(
            address=Web3.to_checksum_address(pack_opener), abi=PACK_OPENER_ABI
        )
        self.nft = self.w3.eth.contract(address=Web3.to_checksum_address(nft), abi=NFT_ABI)
        self.account = account
        self.tx_timeout = tx_timeout
        self.chain_id = chain_id
        self.addresses = {
            "tournament_manager": tournament_manager,
            "pack_opener": pack_opener,
            "nft": nft,
        }

    @classmethod
    def from_config(cls, chain_config) -> "LedgerClient":
        """Build from a ChainConfig, loading the admin account when a key is set."""
        account = load_admin_account(chain_config.admin_private_key)
        return cls(
            rpc_url=chain_config.rpc_url,
            tournament_manager=chain_config.tournament_manager,
            pack_opener=chain_config.pack_opener,
            nft=chain_config.nft,
            account=account,
            request_timeout=chain_config.request_timeout,
            chain_id=chain_config.chain_id,
            tx_timeout=chain_config.tx_timeout,
        )

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def _call(self, label: str, fn) -> Any:
        try:
            return fn.call()
        except Exception as e:
            raise LedgerError(f"{label} failed: {e}") from e

    def active_tournament_id(self) -> int:
        """Current tournament pointer; 0 means none set."""
        return int(self._call("activeTournamentId()", self.pack_opener.functions.activeTournamentId()))

    def get_tournament(self, tournament_id: int) -> LedgerTournament:
        raw = self._call(
            f"getTournament({tournament_id})",
            self.tournaments.functions.getTournament(tournament_id),
        )
        return LedgerTournament(
            id=int(raw[0]),
            registration_start=int(raw[1]),
            start_time=int(raw[2]),
            end_time=int(raw[3]),
            prize_pool=int(raw[4]),
            entry_count=int(raw[5]),
            status_code=int(raw[6]),
        )

    def get_status(self, tournament_id: int) -> int:
        return self.get_tournament(tournament_id).status_code

    def get_participants(self, tournament_id: int) -> list[str]:
        raw = self._call(
            f"getTournamentParticipants({tournament_id})",
            self.tournaments.functions.getTournamentParticipants(tournament_id),
        )
        return [addr.lower() for addr in raw]

    def get_lineup(self, tournament_id: int, player: str) -> Lineup:
        Web3 = _require_web3()
        raw = self._call(
            f"getUserLineup({tournament_id}, {player})",
            self.tournaments.functions.getUserLineup(tournament_id, Web3.to_checksum_address(player)),
        )
        return Lineup(
            card_ids=[int(c) for c in raw[0]],
            owner=str(raw[1]).lower(),
            timestamp=int(raw[2]),
            cancelled=bool(raw[3]),
            claimed=bool(raw[4]),
        )

    def get_card(self, token_id: int) -> Card:
        raw = self._call(f"getCardInfo({token_id})", self.nft.functions.getCardInfo(token_id))
        return Card(
            token_id=token_id,
            entity_id=int(raw[0]),
            edition=int(raw[1]),
            rarity=int(raw[2]),
            multiplier=int(raw[3]),
            locked=bool(raw[4]),
            name=raw[5],
        )

    def get_locked_cards(self, tournament_id: int, player: str) -> list[Card]:
        """Cards in a player's lineup. Empty for cancelled entries; empty slots skipped."""
        lineup = self.get_lineup(tournament_id, player)
        if lineup.cancelled:
            return []
        return [self.get_card(token_id) for token_id in lineup.card_ids[:LINEUP_SIZE] if token_id]

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def finalize_with_points(self, tournament_id: int, points: list[int]) -> str:
        """Send finalizeWithPoints() and wait for the receipt.

        Not safe to retry blindly: callers must re-read the tournament status
        after any exception before sending again.

        Returns:
            Transaction hash hex string.
        """
        if self.account is None:
            raise LedgerError("No admin account configured for finalization")
        if len(points) != POINTS_SIZE:
            raise ValueError(f"finalizeWithPoints takes {POINTS_SIZE} points, got {len(points)}")

        tx = self.tournaments.functions.finalizeWithPoints(tournament_id, list(points)).build_transaction(
            {
                "from": self.account.address,
                "nonce": self.w3.eth.get_transaction_count(self.account.address),
                "chainId": self.chain_id or self.w3.eth.chain_id,
            }
        )

        signed_tx = self.w3.eth.account.sign_transaction(tx, self.account.key)
        tx_hash = self.w3.eth.send_raw_transaction(signed_tx.raw_transaction)
        logger.info(f"finalizeWithPoints tx sent: {tx_hash.hex()}")

        receipt = self.w3.eth.wait_for_transaction_receipt(tx_hash, timeout=self.tx_timeout)
        if receipt["status"] != 1:
            raise TransactionReverted(f"finalizeWithPoints reverted: {tx_hash.hex()}")

        logger.info(f"finalizeWithPoints confirmed in block {receipt['blockNumber']}")
        return tx_hash.hex()


def load_admin_account(private_key: str | None):
    """LocalAccount for the admin key, or None when no key is configured."""
    if not private_key:
        return None
    try:
        from eth_account import Account
    except ImportError:
        raise ImportError(
            "eth-account is required for finalization. "
            "Install it with: pip install fantasyyc"
        )
    if not private_key.startswith("0x"):
        private_key = "0x" + private_key
    return Account.from_key(private_key)


def contract_fingerprint(addresses: dict[str, str]) -> str:
    """Stable identity of a deployed contract set. Changes on redeploy."""
    return ",".join(f"{k}={v.lower()}" for k, v in sorted(addresses.items()))
