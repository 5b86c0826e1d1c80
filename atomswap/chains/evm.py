"""
EVM ledger adapter.

Interacts with a HashedTimelockERC20 contract through web3.py. Lock ids are
computed the same way the contract does (keccak256 of the packed create
parameters), which makes create_lock() idempotent: a retried create finds
the existing lock instead of locking funds twice.
"""

import logging
from dataclasses import dataclass
from typing import Optional, List, Dict, Any

from ..core import EventKind, LockState, hash_secret, normalize_hex
from .base import (
    LedgerAdapter, LockHandle, Receipt, LockSnapshot, ChainEvent,
    LedgerError, TransientChainError, LockNotFound, InvalidSecret,
    AlreadyClaimed, AlreadyRefunded, NotExpired, LockExpired, InsufficientFunds,
)

log = logging.getLogger(__name__)

ZERO_ADDRESS = "0x" + "0" * 40

HTLC_ABI = [
    {
        "name": "create",
        "type": "function",
        "inputs": [
            {"name": "receiver", "type": "address"},
            {"name": "token", "type": "address"},
            {"name": "amount", "type": "uint256"},
            {"name": "hashlock", "type": "bytes32"},
            {"name": "timelock", "type": "uint256"}
        ],
        "outputs": [{"name": "htlcId", "type": "bytes32"}]
    },
    {
        "name": "withdraw",
        "type": "function",
        "inputs": [
            {"name": "htlcId", "type": "bytes32"},
            {"name": "preimage", "type": "bytes32"}
        ],
        "outputs": []
    },
    {
        "name": "refund",
        "type": "function",
        "inputs": [{"name": "htlcId", "type": "bytes32"}],
        "outputs": []
    },
    {
        "name": "getHTLC",
        "type": "function",
        "stateMutability": "view",
        "inputs": [{"name": "htlcId", "type": "bytes32"}],
        "outputs": [
            {"name": "sender", "type": "address"},
            {"name": "receiver", "type": "address"},
            {"name": "token", "type": "address"},
            {"name": "amount", "type": "uint256"},
            {"name": "hashlock", "type": "bytes32"},
            {"name": "timelock", "type": "uint256"},
            {"name": "withdrawn", "type": "bool"},
            {"name": "refunded", "type": "bool"},
            {"name": "preimage", "type": "bytes32"}
        ]
    },
    {
        "name": "HTLCCreated",
        "type": "event",
        "anonymous": False,
        "inputs": [
            {"name": "htlcId", "type": "bytes32", "indexed": True},
            {"name": "sender", "type": "address", "indexed": True},
            {"name": "receiver", "type": "address", "indexed": True},
            {"name": "token", "type": "address", "indexed": False},
            {"name": "amount", "type": "uint256", "indexed": False},
            {"name": "hashlock", "type": "bytes32", "indexed": False},
            {"name": "timelock", "type": "uint256", "indexed": False}
        ]
    },
    {
        "name": "HTLCWithdrawn",
        "type": "event",
        "anonymous": False,
        "inputs": [
            {"name": "htlcId", "type": "bytes32", "indexed": True},
            {"name": "preimage", "type": "bytes32", "indexed": False}
        ]
    },
    {
        "name": "HTLCRefunded",
        "type": "event",
        "anonymous": False,
        "inputs": [
            {"name": "htlcId", "type": "bytes32", "indexed": True}
        ]
    }
]

ERC20_ABI = [
    {
        "name": "approve",
        "type": "function",
        "inputs": [
            {"name": "spender", "type": "address"},
            {"name": "amount", "type": "uint256"}
        ],
        "outputs": [{"name": "", "type": "bool"}]
    },
    {
        "name": "allowance",
        "type": "function",
        "stateMutability": "view",
        "inputs": [
            {"name": "owner", "type": "address"},
            {"name": "spender", "type": "address"}
        ],
        "outputs": [{"name": "", "type": "uint256"}]
    },
    {
        "name": "balanceOf",
        "type": "function",
        "stateMutability": "view",
        "inputs": [{"name": "account", "type": "address"}],
        "outputs": [{"name": "", "type": "uint256"}]
    }
]

# Event name -> normalized kind
_EVENT_KINDS = {
    "HTLCCreated": EventKind.LOCK_CREATED,
    "HTLCWithdrawn": EventKind.LOCK_CLAIMED,
    "HTLCRefunded": EventKind.LOCK_REFUNDED,
}


@dataclass
class EVMLedgerConfig:
    """EVM adapter configuration."""
    name: str
    rpc_url: str
    chain_id: int
    contract_address: str
    token_address: str
    private_key: str = ""
    hash_function: str = "sha256"
    gas_price_multiplier: float = 1.1
    receipt_timeout: int = 120


class EVMLedger(LedgerAdapter):
    """HashedTimelockERC20 client."""

    def __init__(self, config: EVMLedgerConfig):
        self.config = config
        self.name = config.name
        self.hash_function = config.hash_function
        self._web3 = None
        self._account = None
        self.address = self.account.address if config.private_key else ""

    @property
    def web3(self):
        """Lazy-load web3 instance."""
        if self._web3 is None:
            from web3 import Web3
            self._web3 = Web3(Web3.HTTPProvider(self.config.rpc_url))
        return self._web3

    @property
    def account(self):
        if self._account is None:
            from eth_account import Account
            key = self.config.private_key
            if not key.startswith("0x"):
                key = "0x" + key
            self._account = Account.from_key(key)
        return self._account

    def _contract(self):
        from web3 import Web3
        return self.web3.eth.contract(
            address=Web3.to_checksum_address(self.config.contract_address),
            abi=HTLC_ABI
        )

    def _token(self):
        from web3 import Web3
        return self.web3.eth.contract(
            address=Web3.to_checksum_address(self.config.token_address),
            abi=ERC20_ABI
        )

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------

    def lock_id_for(self, receiver: str, amount: int, hashlock: str, timelock: int) -> str:
        from web3 import Web3
        digest = Web3.solidity_keccak(
            ["address", "address", "address", "uint256", "bytes32", "uint256"],
            [
                Web3.to_checksum_address(self.address),
                Web3.to_checksum_address(receiver),
                Web3.to_checksum_address(self.config.token_address),
                amount,
                bytes.fromhex(normalize_hex(hashlock)),
                timelock,
            ],
        )
        return normalize_hex(digest.hex())

    def _read_htlc(self, lock_id: str) -> Optional[Dict[str, Any]]:
        try:
            result = self._contract().functions.getHTLC(bytes.fromhex(normalize_hex(lock_id))).call()
        except (OSError, TimeoutError) as e:
            raise TransientChainError(f"getHTLC failed: {e}") from e

        sender, receiver, token, amount, hashlock, timelock, withdrawn, refunded, preimage = result
        if sender == ZERO_ADDRESS:
            return None
        return {
            "sender": sender,
            "receiver": receiver,
            "token": token,
            "amount": amount,
            "hashlock": normalize_hex(hashlock.hex()),
            "timelock": timelock,
            "withdrawn": withdrawn,
            "refunded": refunded,
            "preimage": normalize_hex(preimage.hex()),
        }

    def get_lock(self, handle: LockHandle) -> LockSnapshot:
        htlc = self._read_htlc(handle.lock_id)
        if htlc is None:
            raise LockNotFound(handle.lock_id)

        if htlc["withdrawn"]:
            state = LockState.CLAIMED
        elif htlc["refunded"]:
            state = LockState.REFUNDED
        elif self.chain_time() >= htlc["timelock"]:
            state = LockState.EXPIRED
        else:
            state = LockState.CREATED

        return LockSnapshot(
            lock_id=handle.lock_id,
            sender=htlc["sender"],
            receiver=htlc["receiver"],
            amount=htlc["amount"],
            hashlock=htlc["hashlock"],
            timelock=htlc["timelock"],
            state=state,
            secret=htlc["preimage"] if htlc["withdrawn"] else None,
        )

    def block_height(self) -> int:
        try:
            return self.web3.eth.block_number
        except (OSError, TimeoutError) as e:
            raise TransientChainError(f"block_number failed: {e}") from e

    def chain_time(self) -> int:
        try:
            return int(self.web3.eth.get_block("latest")["timestamp"])
        except (OSError, TimeoutError) as e:
            raise TransientChainError(f"get_block failed: {e}") from e

    def events(self, from_height: int, to_height: int) -> List[ChainEvent]:
        from web3 import Web3
        from web3.exceptions import MismatchedABI

        if to_height < from_height:
            return []

        try:
            logs = self.web3.eth.get_logs({
                "address": Web3.to_checksum_address(self.config.contract_address),
                "fromBlock": from_height,
                "toBlock": to_height,
            })
        except (OSError, TimeoutError) as e:
            raise TransientChainError(f"get_logs failed: {e}") from e

        contract = self._contract()
        result = []
        for entry in logs:
            for event_name, kind in _EVENT_KINDS.items():
                try:
                    decoded = getattr(contract.events, event_name)().process_log(entry)
                except MismatchedABI:
                    continue
                result.append(self._to_event(kind, decoded))
                break
        return result

    def _to_event(self, kind: EventKind, decoded) -> ChainEvent:
        args = decoded["args"]
        event = ChainEvent(
            kind=kind,
            chain=self.name,
            lock_id=normalize_hex(args["htlcId"].hex()),
            height=decoded["blockNumber"],
            extra={"tx_hash": normalize_hex(decoded["transactionHash"].hex())},
        )
        if kind == EventKind.LOCK_CREATED:
            event.sender = args["sender"]
            event.receiver = args["receiver"]
            event.amount = args["amount"]
            event.hashlock = normalize_hex(args["hashlock"].hex())
            event.timelock = args["timelock"]
        elif kind == EventKind.LOCK_CLAIMED:
            event.secret = normalize_hex(args["preimage"].hex())
        return event

    # -------------------------------------------------------------------------
    # Writes
    # -------------------------------------------------------------------------

    def _send(self, fn_call, gas: int) -> Dict[str, Any]:
        """Sign, broadcast and wait for a contract call. Returns the receipt."""
        from web3.exceptions import TimeExhausted

        w3 = self.web3
        sender = self.account.address
        try:
            nonce = w3.eth.get_transaction_count(sender, 'pending')
            gas_price = int(w3.eth.gas_price * self.config.gas_price_multiplier)

            tx = fn_call.build_transaction({
                'from': sender,
                'nonce': nonce,
                'gas': gas,
                'gasPrice': gas_price,
                'chainId': self.config.chain_id
            })
            signed = self.account.sign_transaction(tx)
            tx_hash = w3.eth.send_raw_transaction(signed.raw_transaction)
            log.info(f"[{self.name}] TX sent: {tx_hash.hex()}")

            receipt = w3.eth.wait_for_transaction_receipt(tx_hash, timeout=self.config.receipt_timeout)
        except (OSError, TimeoutError, TimeExhausted) as e:
            raise TransientChainError(f"transaction failed: {e}") from e

        if receipt['status'] != 1:
            raise LedgerError(f"transaction reverted: {tx_hash.hex()}")
        return receipt

    def _ensure_allowance(self, amount: int):
        from web3 import Web3

        token = self._token()
        spender = Web3.to_checksum_address(self.config.contract_address)
        sender = self.account.address

        balance = token.functions.balanceOf(sender).call()
        if balance < amount:
            raise InsufficientFunds(f"{sender} has {balance}, needs {amount}")

        allowance = token.functions.allowance(sender, spender).call()
        if allowance < amount:
            log.info(f"[{self.name}] Approving token spending (allowance {allowance} < {amount})")
            self._send(token.functions.approve(spender, 2**256 - 1), gas=100000)

    def create_lock(self, receiver: str, amount: int, hashlock: str, timelock: int) -> LockHandle:
        from web3 import Web3
        from web3.exceptions import ContractLogicError

        lock_id = self.lock_id_for(receiver, amount, hashlock, timelock)
        if self._read_htlc(lock_id) is not None:
            log.info(f"[{self.name}] Lock 0x{lock_id[:16]}... already exists")
            return LockHandle(self.name, lock_id)

        self._ensure_allowance(amount)

        fn_call = self._contract().functions.create(
            Web3.to_checksum_address(receiver),
            Web3.to_checksum_address(self.config.token_address),
            amount,
            bytes.fromhex(normalize_hex(hashlock)),
            timelock
        )

        # Simulate first: the contract returns the id it will assign
        try:
            simulated = normalize_hex(fn_call.call({'from': self.account.address}).hex())
        except (OSError, TimeoutError) as e:
            raise TransientChainError(f"create simulation failed: {e}") from e
        except ContractLogicError as e:
            raise LedgerError(f"create simulation reverted: {e}") from e
        if simulated != lock_id:
            raise LedgerError(f"contract would assign lock id 0x{simulated[:16]}..., "
                              f"expected 0x{lock_id[:16]}...; not sending")

        log.info(f"[{self.name}] Creating lock: {amount} to {receiver[:10]}..., timelock={timelock}")
        receipt = self._send(fn_call, gas=300000)

        created = self._created_id(receipt)
        if created is None:
            log.warning(f"[{self.name}] No HTLCCreated log in receipt, using simulated id")
        elif created != lock_id:
            raise LedgerError(f"HTLCCreated reported lock id 0x{created}, expected 0x{lock_id}")
        return LockHandle(self.name, lock_id)

    def _created_id(self, receipt: Dict[str, Any]) -> Optional[str]:
        """htlcId (first indexed topic) of the HTLCCreated log emitted by our contract."""
        contract = self.config.contract_address.lower()
        for entry in receipt.get('logs', []):
            address = entry['address']
            address = address.lower() if isinstance(address, str) else "0x" + normalize_hex(address.hex())
            if address == contract and len(entry['topics']) >= 2:
                topic = entry['topics'][1]
                return normalize_hex(topic.hex() if hasattr(topic, 'hex') else topic)
        return None

    def claim(self, handle: LockHandle, secret: str) -> Receipt:
        htlc = self._read_htlc(handle.lock_id)
        if htlc is None:
            raise LockNotFound(handle.lock_id)
        if htlc["withdrawn"]:
            raise AlreadyClaimed(handle.lock_id)
        if htlc["refunded"]:
            raise AlreadyRefunded(handle.lock_id)
        if self.chain_time() >= htlc["timelock"]:
            raise LockExpired(f"{handle.lock_id} expired at {htlc['timelock']}")
        if hash_secret(self.hash_function, secret) != htlc["hashlock"]:
            raise InvalidSecret(handle.lock_id)

        receipt = self._send(
            self._contract().functions.withdraw(
                bytes.fromhex(normalize_hex(handle.lock_id)),
                bytes.fromhex(normalize_hex(secret))
            ),
            gas=150000,
        )
        return Receipt(self.name, handle.lock_id, "claim",
                       tx_hash=normalize_hex(receipt['transactionHash'].hex()),
                       height=receipt['blockNumber'])

    def refund(self, handle: LockHandle) -> Receipt:
        htlc = self._read_htlc(handle.lock_id)
        if htlc is None:
            raise LockNotFound(handle.lock_id)
        if htlc["withdrawn"]:
            raise AlreadyClaimed(handle.lock_id)
        if htlc["refunded"]:
            raise AlreadyRefunded(handle.lock_id)
        if self.chain_time() < htlc["timelock"]:
            raise NotExpired(f"{handle.lock_id} locked until {htlc['timelock']}")

        receipt = self._send(
            self._contract().functions.refund(bytes.fromhex(normalize_hex(handle.lock_id))),
            gas=100000,
        )
        return Receipt(self.name, handle.lock_id, "refund",
                       tx_hash=normalize_hex(receipt['transactionHash'].hex()),
                       height=receipt['blockNumber'])
