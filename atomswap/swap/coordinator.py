"""
Swap Coordinator.

Consumes normalized chain events and drives each order through its
lifecycle, issuing lock / claim / refund commands on the ledger adapters.

Order flow (resolver role):
1. Order submitted (hashlock supplied by the initiator, or generated here)
2. Initiator locks source funds (or the coordinator does, lock_source=True)
3. Source lock verified: amount, hashlock, timelock margin
4. Each accepted fill gets its own destination lock
5. Beneficiary claims a destination lock, revealing the secret
6. Coordinator claims every remaining lock with the revealed secret

If the secret never appears, the Timeout Scheduler reports expired locks and
the coordinator refunds the ones it created.

Concurrency rules:
- One writer per order (OrderGuard: per-order lock + store lease)
- Chain calls never run under the order lock: an in-flight marker is
  persisted first, the lock released, and the result applied afterwards
- Transient chain errors are retried with exponential backoff; when the
  attempts run out the order goes STUCK for an operator
"""

import logging
import queue
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from typing import Optional, Dict, List, Callable, Any, Tuple

from ..core import (
    Order, OrderStatus, Lock, LockRole, LockState, EventKind, FillStatus,
    FillSecretMode, ReasonCode, TERMINAL_STATUSES,
    SwapError, ProtocolViolation, OrderNotFound, VersionConflict, LeaseHeld,
    RetriesExhausted, normalize_hex, new_id, now, validate_timelock_margin,
)
from ..config import CoordinatorConfig
from ..chains.base import (
    LedgerAdapter, LockHandle, ChainEvent, LedgerError, TransientChainError,
    InvalidSecret, AlreadyClaimed, AlreadyRefunded, NotExpired, LockExpired,
    InsufficientFunds,
)
from .secret_manager import SecretManager
from .store import OrderStore
from .fills import PartialFillAllocator
from .deposits import SafetyDepositLedger
from .notify import Notifier
from .locks import OrderGuard, OrderLockTimeout

log = logging.getLogger(__name__)

REQUEUE_DELAY = 1.0     # seconds before retrying an event that raced a write


class Coordinator:
    """Per-order HTLC state machine."""

    def __init__(
        self,
        store: OrderStore,
        ledgers: Dict[str, LedgerAdapter],
        secrets: SecretManager,
        config: CoordinatorConfig = None,
        allocator: PartialFillAllocator = None,
        deposits: SafetyDepositLedger = None,
        notifier: Notifier = None,
    ):
        self.store = store
        self.ledgers = ledgers
        self.secrets = secrets
        self.config = config or CoordinatorConfig()
        self.allocator = allocator or PartialFillAllocator()
        if deposits is None:
            deposits = SafetyDepositLedger(
                bps=self.config.safety_deposit_bps,
                forfeit_destination=self.config.forfeit_destination,
                treasury_address=self.config.treasury_address,
                fee_bps=self.config.protocol_fee_bps,
            )
            if self.config.resolver_collateral:
                deposits.fund(self.config.resolver_id, self.config.resolver_collateral)
        self.deposits = deposits
        self.notifier = notifier or Notifier(self.config.webhook_url)
        self.guard = OrderGuard(store, self.config.instance_id, self.config.lease_ttl)

        # Normalized event stream from the chain monitors
        self.events: "queue.Queue[ChainEvent]" = queue.Queue()

        self._listeners: List[Callable[[Order], None]] = []
        self._stop = threading.Event()
        self._dispatcher: Optional[threading.Thread] = None
        self._pool: Optional[ThreadPoolExecutor] = None

    # =========================================================================
    # Public API
    # =========================================================================

    def submit_order(self, params: Dict[str, Any]) -> str:
        """
        Validate and store a new order.

        Args:
            params: source_chain, dest_chain, source_asset, dest_asset,
                source_amount, dest_amount, initiator, beneficiary,
                timelock_source, timelock_dest, and optionally hashlock
                (or per-chain hashlocks), min_fill_amount, fill_secret_mode,
                lock_source, source_receiver

        Returns:
            order id

        Raises:
            ProtocolViolation: timelock ordering / margin violated, or source timelock too far out
            ValueError: malformed parameters
        """
        source_chain = params["source_chain"]
        dest_chain = params["dest_chain"]
        for chain in (source_chain, dest_chain):
            if chain not in self.ledgers:
                raise ValueError(f"Unknown chain: {chain}")
        if source_chain == dest_chain:
            raise ValueError("Source and destination chain must differ")

        source_amount = int(params["source_amount"])
        dest_amount = int(params["dest_amount"])
        if source_amount <= 0 or dest_amount <= 0:
            raise ValueError("Amounts must be positive")

        min_fill = params.get("min_fill_amount")
        if min_fill is not None:
            min_fill = int(min_fill)
            if not 0 < min_fill <= source_amount:
                raise ValueError(f"min_fill_amount must be in (0, {source_amount}]")

        timelock_source = int(params["timelock_source"])
        timelock_dest = int(params["timelock_dest"])
        validate_timelock_margin(timelock_source, timelock_dest, self.config.min_timelock_margin)
        dest_now = self.ledgers[dest_chain].chain_time()
        if timelock_dest <= dest_now:
            raise ProtocolViolation(
                ReasonCode.TIMELOCK_MARGIN,
                f"timelock_dest {timelock_dest} already passed on {dest_chain} (now {dest_now})"
            )
        source_now = self.ledgers[source_chain].chain_time()
        max_duration = self.config.max_timelock_duration
        if max_duration and timelock_source - source_now > max_duration:
            raise ProtocolViolation(
                ReasonCode.TIMELOCK_TOO_LONG,
                f"timelock_source {timelock_source} is more than {max_duration}s ahead of {source_chain} (now {source_now})"
            )

        mode = FillSecretMode(params.get("fill_secret_mode") or self.config.fill_secret_mode.value)
        hashlocks = self._order_hashlocks(params, source_chain, dest_chain, mode)

        created = now()
        order = Order(
            id=new_id("order"),
            source_chain=source_chain,
            dest_chain=dest_chain,
            source_asset=params["source_asset"],
            dest_asset=params["dest_asset"],
            source_amount=source_amount,
            dest_amount=dest_amount,
            initiator=params["initiator"],
            beneficiary=params["beneficiary"],
            hashlock=hashlocks[source_chain],
            timelock_source=timelock_source,
            timelock_dest=timelock_dest,
            min_fill_amount=min_fill,
            created_at=created,
            hashlocks=hashlocks,
            fill_secret_mode=mode,
            acceptance_deadline=created + self.config.acceptance_window,
            lock_source=bool(params.get("lock_source", False)),
        )
        order = self.store.create(order)
        log.info(f"Order {order.id} submitted: {source_amount} {order.source_asset}@{source_chain} -> "
                 f"{dest_amount} {order.dest_asset}@{dest_chain}, hashlock={order.hashlock[:16]}...")
        self._notify_listeners(order)

        if order.lock_source:
            self._lock_source(order.id, params.get("source_receiver"))
        return order.id

    def _order_hashlocks(self, params, source_chain, dest_chain, mode) -> Dict[str, str]:
        if params.get("hashlocks"):
            hashlocks = {c: normalize_hex(h) for c, h in params["hashlocks"].items()}
            missing = {source_chain, dest_chain} - set(hashlocks)
            if missing:
                raise ValueError(f"hashlocks missing for: {sorted(missing)}")
        elif params.get("hashlock"):
            src_fn = self.secrets.hash_functions[source_chain]
            dst_fn = self.secrets.hash_functions[dest_chain]
            if src_fn != dst_fn:
                raise ValueError(f"{source_chain} uses {src_fn}, {dest_chain} uses {dst_fn}: "
                                 f"pass per-chain hashlocks")
            hashlock = normalize_hex(params["hashlock"])
            hashlocks = {source_chain: hashlock, dest_chain: hashlock}
        else:
            generated = self.secrets.generate()
            return {source_chain: generated[source_chain], dest_chain: generated[dest_chain]}

        if mode == FillSecretMode.PER_FILL:
            raise ValueError("per_fill secrets need a coordinator-generated master secret")
        return hashlocks

    def get_order(self, order_id: str) -> Dict[str, Any]:
        return self.store.get(order_id).snapshot()

    def list_orders(self, status: Optional[OrderStatus] = None,
                    chain: Optional[str] = None) -> List[Dict[str, Any]]:
        return [o.snapshot() for o in self.store.list(status=status, chain=chain)]

    def submit_fill(self, order_id: str, filler: str, amount: int) -> Dict[str, Any]:
        """
        Accept a partial fill and, once the source is locked, create its destination lock.

        Raises:
            BelowMinimumFill, InsufficientRemaining, FillRejected, InsufficientCollateral
        """
        with self.guard.hold(order_id, "fill"):
            order = self.store.get(order_id)
            previous = order.status
            fill = self.allocator.allocate(order, filler, int(amount))
            self._prepare_fill(order, fill)
            order = self._commit(order, previous)
            ready = order.status in (OrderStatus.SOURCE_LOCKED, OrderStatus.DEST_LOCKED)

        if ready:
            self._create_dest_lock(order_id, fill.id)
        return self.store.get(order_id).get_fill(fill.id).to_dict()

    def reveal(self, order_id: str) -> Dict[str, Any]:
        """
        Claim the destination locks with the secrets held here.

        Each claim pays the beneficiary and publishes the secret on the
        destination chain; the source lock is then claimed with it.
        """
        todo = []
        with self.guard.hold(order_id, "reveal"):
            order = self.store.get(order_id)
            if order.status != OrderStatus.DEST_LOCKED:
                raise SwapError(f"Order {order_id} is {order.status.value}, not dest_locked")
            if order.filled_amount != order.source_amount:
                raise SwapError(f"Order {order_id} is filled {order.filled_amount}/{order.source_amount}")
            if any(f.status == FillStatus.ACCEPTED for f in order.fills):
                raise SwapError(f"Order {order_id} still has fills without a destination lock")

            for lock in order.dest_locks:
                if lock.state != LockState.CREATED:
                    continue
                secret = self.secrets.plaintext(lock.hashlock)
                if secret is None:
                    raise SwapError(f"No secret held for order {order_id}")
                key = f"claim:{lock.id}"
                if self._begin(order, key, "claim", lock.chain, lock.id):
                    todo.append((lock.id, lock.chain, secret, key))
            if todo:
                self._commit(order, order.status)

        for lock_id, chain, secret, key in todo:
            self._claim(order_id, lock_id, chain, secret, key)
        self._settle(order_id)
        return self.get_order(order_id)

    def resume(self, order_id: str) -> Dict[str, Any]:
        """Operator action: clear a STUCK order's in-flight markers and re-drive it."""
        with self.guard.hold(order_id, "resume"):
            order = self.store.get(order_id)
            if order.status != OrderStatus.STUCK:
                raise SwapError(f"Order {order_id} is {order.status.value}, not stuck")
            if order.reason == ReasonCode.MIXED_OUTCOME.value:
                raise SwapError(f"Order {order_id} has a mixed outcome and needs manual settlement")

            order.in_flight = {}
            order.status = OrderStatus(order.stuck_from) if order.stuck_from else OrderStatus.PENDING
            order.reason = None
            order.stuck_from = None
            self._refresh_status(order)
            self._commit(order, OrderStatus.STUCK)
            log.info(f"Order {order_id} resumed as {order.status.value}")

        self._drive(order_id)
        return self.get_order(order_id)

    def recover(self) -> int:
        """
        Startup pass: drop in-flight markers this instance left behind and
        re-drive their orders. Creates are idempotent, so a create that did
        land is picked up again rather than repeated.

        Returns:
            number of orders re-driven
        """
        interrupted = []
        for order in self.store.list(active_only=True):
            if order.status == OrderStatus.STUCK:
                continue
            keys = [k for k, m in order.in_flight.items() if m.get("owner") == self.config.instance_id]
            if not keys:
                continue
            with self.guard.hold(order.id, "recover"):
                current = self.store.get(order.id)
                for key in keys:
                    current.in_flight.pop(key, None)
                self._commit(current, current.status)
            log.warning(f"Order {order.id}: {len(keys)} interrupted chain call(s), re-driving")
            interrupted.append(order.id)

        for order_id in interrupted:
            self._drive(order_id)
        return len(interrupted)

    def metrics(self) -> Dict[str, Any]:
        data = self.store.metrics()
        data["deposits"] = self.deposits.summary()
        data["queued_events"] = self.events.qsize()
        return data

    def add_lock_listener(self, listener: Callable[[Order], None]):
        """Called with every committed order (the scheduler indexes its locks)."""
        self._listeners.append(listener)

    # =========================================================================
    # Event handling
    # =========================================================================

    def handle_event(self, event: ChainEvent):
        """Apply one chain event. Safe to call more than once per event."""
        order_id = self.store.find_by_lock(event.chain, event.lock_id)
        if order_id is None and event.kind == EventKind.LOCK_CREATED:
            order_id = self._match_source_lock(event)
        if order_id is None:
            log.debug(f"[{event.chain}] Ignoring {event.kind.value} for unknown lock {event.lock_id[:16]}...")
            return

        if event.kind == EventKind.LOCK_CREATED:
            self._on_lock_created(order_id, event)
        elif event.kind == EventKind.LOCK_CLAIMED:
            self._on_lock_claimed(order_id, event)
        elif event.kind == EventKind.LOCK_REFUNDED:
            self._on_lock_refunded(order_id, event)
        elif event.kind == EventKind.LOCK_EXPIRED:
            self.on_lock_expired(order_id, event.lock_id)

    def _match_source_lock(self, event: ChainEvent) -> Optional[str]:
        if not event.hashlock:
            return None
        for order_id in self.store.find_by_hashlock(event.chain, normalize_hex(event.hashlock)):
            order = self.store.get(order_id)
            if (order.source_chain == event.chain and order.status == OrderStatus.PENDING
                    and order.source_lock is None):
                return order_id
        return None

    def _requeue(self, event: ChainEvent):
        timer = threading.Timer(REQUEUE_DELAY, self.events.put, args=(event,))
        timer.daemon = True
        timer.start()

    def _on_lock_created(self, order_id: str, event: ChainEvent):
        with self.guard.hold(order_id, "lock_created"):
            order = self.store.get(order_id)
            previous = order.status
            if event.key in order.seen_events:
                return

            adopted = False
            marker = self._marker_for(order, event.lock_id)
            if order.get_lock(event.lock_id) is None:
                if marker and self._is_fresh(marker):
                    # Our own create is still being applied
                    self._requeue(event)
                    return
                if marker:
                    log.warning(f"Order {order_id}: {marker['action']} of {event.lock_id[:16]}... never "
                                f"reported back, adopting the confirmed lock")
                    self._adopt_created(order, marker, event.lock_id, event.amount, event.hashlock,
                                        event.timelock, event.sender, event.receiver)
                    adopted = True
                elif order.status != OrderStatus.PENDING or order.source_lock is not None:
                    log.warning(f"Order {order_id}: unexpected lock {event.lock_id[:16]}... on {event.chain}")
                    order.seen_events.append(event.key)
                    self._commit(order, previous)
                    return
                else:
                    lock = Lock(
                        id=event.lock_id,
                        chain=event.chain,
                        role=LockRole.SOURCE,
                        amount=event.amount,
                        hashlock=normalize_hex(event.hashlock),
                        timelock=event.timelock,
                        owned=False,
                        sender=event.sender or "",
                        receiver=event.receiver or "",
                    )
                    order.locks.append(lock)
                    try:
                        self._verify_source_lock(order, lock)
                    except ProtocolViolation as e:
                        log.error(f"Order {order_id}: source lock rejected ({e.reason.value}): {e}")
                        order.seen_events.append(event.key)
                        self._set_status(order, OrderStatus.CANCELLED, e.reason)
                        self._commit(order, previous)
                        return
                    self._set_status(order, OrderStatus.SOURCE_LOCKED)
                    log.info(f"Order {order_id}: source lock {lock.id[:16]}... verified")

            order.seen_events.append(event.key)
            order = self._commit(order, previous)

        if order.status == OrderStatus.SOURCE_LOCKED or (adopted and order.status == OrderStatus.DEST_LOCKED):
            self._fill_and_lock(order_id)

    def _on_lock_claimed(self, order_id: str, event: ChainEvent):
        if not event.secret:
            log.warning(f"[{event.chain}] Claim of {event.lock_id[:16]}... carries no secret")
            return

        with self.guard.hold(order_id, "lock_claimed"):
            order = self.store.get(order_id)
            previous = order.status
            lock = order.get_lock(event.lock_id)
            if lock is None:
                self._requeue(event)
                return

            valid = self.secrets.observe_claim(event.chain, lock.hashlock, event.secret)
            if event.key in order.seen_events:
                log.debug(f"Order {order_id}: duplicate {event.key}")
                return
            order.seen_events.append(event.key)

            if not valid:
                log.error(f"Order {order_id}: PROTOCOL VIOLATION - claim of {lock.id[:16]}... "
                          f"with a secret that does not match its hashlock")
                self._mark_stuck(order, ReasonCode.INVALID_SECRET, "claimed secret does not match hashlock")
                self._commit(order, previous)
                return

            if lock.state != LockState.CLAIMED:
                self._mark_claimed(order, lock, event.secret)
            elif lock.secret is None:
                lock.secret = normalize_hex(event.secret)
            self._refresh_status(order)
            order = self._commit(order, previous)

        if not order.terminal:
            self._settle(order_id)

    def _on_lock_refunded(self, order_id: str, event: ChainEvent):
        with self.guard.hold(order_id, "lock_refunded"):
            order = self.store.get(order_id)
            previous = order.status
            lock = order.get_lock(event.lock_id)
            if lock is None:
                self._requeue(event)
                return
            if event.key in order.seen_events:
                return
            order.seen_events.append(event.key)

            if lock.state != LockState.REFUNDED:
                self._expire_lock(order, lock)
                lock.state = LockState.REFUNDED
                log.info(f"Order {order_id}: {lock.role.value} lock {lock.id[:16]}... refunded")
            self._refresh_status(order)
            self._commit(order, previous)

    def on_lock_expired(self, order_id: str, lock_id: str):
        """
        A lock's timelock has passed on its chain.

        Claim first if the secret is known (the chain decides whether it is
        too late); otherwise refund if this coordinator created the lock.
        """
        claim = None
        with self.guard.hold(order_id, "lock_expired"):
            order = self.store.get(order_id)
            previous = order.status
            lock = order.get_lock(lock_id)
            if lock is None or lock.terminal:
                return
            if self._fresh_marker(order, f"claim:{lock_id}") or self._fresh_marker(order, f"refund:{lock_id}"):
                return

            secret = self.secrets.revealed(lock.hashlock)
            if secret is not None:
                key = f"claim:{lock_id}"
                self._begin(order, key, "claim", lock.chain, lock.id)
                claim = (lock.chain, secret, key)
            else:
                self._expire_lock(order, lock)
            self._commit(order, previous)

        if claim:
            self._claim(order_id, lock_id, *claim)
        else:
            self._refund(order_id, lock_id)

    def on_acceptance_timeout(self, order_id: str) -> bool:
        """Cancel an order still waiting for its source lock. Returns True if cancelled."""
        with self.guard.hold(order_id, "acceptance_timeout"):
            order = self.store.get(order_id)
            if order.status != OrderStatus.PENDING or order.source_lock is not None:
                return False
            creates = [m for m in order.in_flight.values() if m.get("action") == "create_lock"]
            if any(self._is_fresh(m) for m in creates):
                return False
            if not creates:
                log.info(f"Order {order_id}: no source lock before deadline, cancelling")
                self._set_status(order, OrderStatus.CANCELLED, ReasonCode.NO_FILLER)
                self._commit(order, OrderStatus.PENDING)
                return True

        # Stale create markers: ask the chain whether the lock made it
        landed = [(m, self._find_lock(m["chain"], m["lock_id"])) for m in creates]
        landed = [(m, snap) for m, snap in landed if snap is not None]
        adopted = False
        with self.guard.hold(order_id, "acceptance_timeout_stale"):
            order = self.store.get(order_id)
            if order.status != OrderStatus.PENDING or order.source_lock is not None:
                return False
            for marker, snap in landed:
                log.warning(f"Order {order_id}: stale create of {marker['lock_id'][:16]}... found on chain, adopting")
                self._adopt_created(order, marker, snap.lock_id, snap.amount, snap.hashlock,
                                    snap.timelock, snap.sender, snap.receiver)
                adopted = True
            if not adopted:
                for key in [k for k, m in order.in_flight.items() if m.get("action") == "create_lock"]:
                    order.in_flight.pop(key)
                log.info(f"Order {order_id}: stale create never landed, cancelling")
                self._set_status(order, OrderStatus.CANCELLED, ReasonCode.NO_FILLER)
            order = self._commit(order, OrderStatus.PENDING)

        if adopted:
            self._fill_and_lock(order_id)
        return order.status == OrderStatus.CANCELLED

    # =========================================================================
    # Actions (chain calls run outside the order lock)
    # =========================================================================

    def _lock_source(self, order_id: str, receiver: Optional[str] = None):
        with self.guard.hold(order_id, "lock_source"):
            order = self.store.get(order_id)
            if order.status != OrderStatus.PENDING or order.source_lock is not None:
                return
            ledger = self.ledgers[order.source_chain]
            receiver = receiver or ledger.address
            lock_id = ledger.lock_id_for(receiver, order.source_amount, order.hashlock, order.timelock_source)
            key = f"create:{lock_id}"
            if not self._begin(order, key, "create_lock", order.source_chain, lock_id):
                return
            self._commit(order, order.status)

        handle, error = self._run(
            lambda: ledger.create_lock(receiver, order.source_amount, order.hashlock, order.timelock_source),
            f"create source lock for {order_id}",
        )
        if error is not None and not isinstance(error, InsufficientFunds):
            if self._find_lock(order.source_chain, lock_id) is not None:
                log.warning(f"Order {order_id}: source lock {lock_id[:16]}... landed despite: {error}")
                handle, error = LockHandle(order.source_chain, lock_id), None

        with self.guard.hold(order_id, "lock_source_done"):
            order = self.store.get(order_id)
            previous = order.status
            order.in_flight.pop(key, None)
            if error is None and order.get_lock(handle.lock_id) is not None:
                log.debug(f"Order {order_id}: source lock {handle.lock_id[:16]}... already recorded")
            elif error is None:
                order.locks.append(Lock(
                    id=handle.lock_id,
                    chain=order.source_chain,
                    role=LockRole.SOURCE,
                    amount=order.source_amount,
                    hashlock=order.hashlock,
                    timelock=order.timelock_source,
                    owned=True,
                    sender=ledger.address,
                    receiver=receiver,
                ))
                self._set_status(order, OrderStatus.SOURCE_LOCKED)
                log.info(f"Order {order_id}: source lock {handle.lock_id[:16]}... created")
            elif isinstance(error, InsufficientFunds):
                log.warning(f"Order {order_id}: cannot fund source lock: {error}")
                self._set_status(order, OrderStatus.CANCELLED, ReasonCode.INSUFFICIENT_FUNDS)
            else:
                self._mark_failed_call(order, error)
            order = self._commit(order, previous)

        if order.status == OrderStatus.SOURCE_LOCKED:
            self._fill_and_lock(order_id)

    def _fill_and_lock(self, order_id: str):
        """Auto-fill if configured, then create destination locks for accepted fills."""
        with self.guard.hold(order_id, "fill_and_lock"):
            order = self.store.get(order_id)
            if order.status not in (OrderStatus.SOURCE_LOCKED, OrderStatus.DEST_LOCKED):
                return
            if self.config.auto_fill and not order.fillable and not order.fills:
                previous = order.status
                try:
                    fill = self.allocator.allocate(order, self.config.resolver_id, order.source_amount)
                    self._prepare_fill(order, fill)
                except SwapError as e:
                    log.warning(f"Order {order_id}: auto-fill skipped: {e}")
                    order = self.store.get(order_id)
                else:
                    order = self._commit(order, previous)
            pending = [f.id for f in order.fills if f.status == FillStatus.ACCEPTED]

        for fill_id in pending:
            self._create_dest_lock(order_id, fill_id)

    def _prepare_fill(self, order: Order, fill):
        if order.fill_secret_mode == FillSecretMode.PER_FILL:
            try:
                derived = self.secrets.derive(order.hashlock, fill.secret_index)
            except KeyError as e:
                raise SwapError(f"Per-fill secret unavailable: {e}") from e
            fill.hashlocks = {c: derived[c] for c in (order.source_chain, order.dest_chain)}
        self.deposits.post(order, fill)

    def _create_dest_lock(self, order_id: str, fill_id: str):
        with self.guard.hold(order_id, "create_dest_lock"):
            order = self.store.get(order_id)
            fill = order.get_fill(fill_id)
            if fill is None or fill.status != FillStatus.ACCEPTED:
                return
            if order.status not in (OrderStatus.SOURCE_LOCKED, OrderStatus.DEST_LOCKED):
                return
            ledger = self.ledgers[order.dest_chain]
            hashlock = order.hashlock_for(order.dest_chain, fill)
            amount = fill.dest_amount
            receiver = order.beneficiary
            timelock = order.timelock_dest
            lock_id = ledger.lock_id_for(receiver, amount, hashlock, timelock)
            taken = {l.id for l in order.locks if l.fill_id != fill_id}
            taken.update(m.get("lock_id") for k, m in order.in_flight.items() if m.get("fill_id") != fill_id)
            while lock_id in taken:
                # Equal fills under one shared hashlock map to the same lock id
                timelock -= 1
                lock_id = ledger.lock_id_for(receiver, amount, hashlock, timelock)
            key = f"create:{lock_id}"
            if not self._begin(order, key, "create_lock", order.dest_chain, lock_id, fill_id=fill_id):
                return
            self._commit(order, order.status)

        def create():
            chain_now = ledger.chain_time()
            if chain_now >= timelock:
                raise ProtocolViolation(ReasonCode.TIMELOCK_MARGIN,
                                        f"timelock_dest {timelock} passed on {order.dest_chain}")
            return ledger.create_lock(receiver, amount, hashlock, timelock)

        handle, error = self._run(create, f"create dest lock for {order_id}/{fill_id}")
        if error is not None and not isinstance(error, (InsufficientFunds, ProtocolViolation)):
            if self._find_lock(order.dest_chain, lock_id) is not None:
                log.warning(f"Order {order_id}: dest lock {lock_id[:16]}... landed despite: {error}")
                handle, error = LockHandle(order.dest_chain, lock_id), None

        with self.guard.hold(order_id, "create_dest_lock_done"):
            order = self.store.get(order_id)
            previous = order.status
            order.in_flight.pop(key, None)
            fill = order.get_fill(fill_id)
            if error is None and order.get_lock(handle.lock_id) is not None:
                log.debug(f"Order {order_id}: dest lock {handle.lock_id[:16]}... already recorded")
            elif error is None:
                order.locks.append(Lock(
                    id=handle.lock_id,
                    chain=order.dest_chain,
                    role=LockRole.DEST,
                    amount=amount,
                    hashlock=hashlock,
                    timelock=timelock,
                    owned=True,
                    fill_id=fill_id,
                    sender=ledger.address,
                    receiver=receiver,
                ))
                fill.status = FillStatus.LOCKED
                fill.lock_id = handle.lock_id
                log.info(f"Order {order_id}: dest lock {handle.lock_id[:16]}... created for {fill_id}")
                self._refresh_status(order)
            elif isinstance(error, (InsufficientFunds, ProtocolViolation)):
                # Order stays open for another filler
                log.warning(f"Order {order_id}: fill {fill_id} dropped: {error}")
                self.allocator.release(order, fill_id, FillStatus.CANCELLED)
                self.deposits.settle_if_held(order, fill_id)
            else:
                self._mark_failed_call(order, error)
            self._commit(order, previous)

    def _settle(self, order_id: str):
        """Claim every open lock whose secret is public."""
        todo = []
        with self.guard.hold(order_id, "settle"):
            order = self.store.get(order_id)
            if order.terminal:
                return
            for lock in order.locks:
                if lock.terminal:
                    continue
                secret = self.secrets.revealed(lock.hashlock)
                if secret is None:
                    continue
                key = f"claim:{lock.id}"
                if self._begin(order, key, "claim", lock.chain, lock.id):
                    todo.append((lock.id, lock.chain, secret, key))
            if todo:
                self._commit(order, order.status)

        for lock_id, chain, secret, key in todo:
            self._claim(order_id, lock_id, chain, secret, key)

    def _claim(self, order_id: str, lock_id: str, chain: str, secret: str, key: str):
        ledger = self.ledgers[chain]
        receipt, error = self._run(
            lambda: ledger.claim(LockHandle(chain, lock_id), secret),
            f"claim {chain}:{lock_id[:16]}",
        )

        expired = False
        with self.guard.hold(order_id, "claim_done"):
            order = self.store.get(order_id)
            previous = order.status
            order.in_flight.pop(key, None)
            lock = order.get_lock(lock_id)

            if error is None or isinstance(error, AlreadyClaimed):
                if error is None:
                    log.info(f"Order {order_id}: claimed {lock.role.value} lock {lock_id[:16]}... "
                             f"(tx {receipt.tx_hash})")
                else:
                    log.info(f"Order {order_id}: {lock.role.value} lock {lock_id[:16]}... already claimed")
                if lock.state != LockState.CLAIMED:
                    self._mark_claimed(order, lock, secret)
            elif isinstance(error, LockExpired):
                log.warning(f"Order {order_id}: claim of {lock_id[:16]}... rejected as expired, refunding")
                self._expire_lock(order, lock)
                expired = True
            elif isinstance(error, AlreadyRefunded):
                self._expire_lock(order, lock)
                lock.state = LockState.REFUNDED
            elif isinstance(error, InvalidSecret):
                log.error(f"Order {order_id}: PROTOCOL VIOLATION - chain rejected secret for "
                          f"{lock.role.value} lock {lock_id[:16]}...")
                self._mark_stuck(order, ReasonCode.INVALID_SECRET, str(error))
            else:
                self._mark_failed_call(order, error)

            self._refresh_status(order)
            self._commit(order, previous)

        if expired:
            self._refund(order_id, lock_id)

    def _refund(self, order_id: str, lock_id: str):
        with self.guard.hold(order_id, "refund"):
            order = self.store.get(order_id)
            previous = order.status
            lock = order.get_lock(lock_id)
            if lock is None or lock.terminal:
                return
            if not lock.owned:
                if lock.state == LockState.CREATED:
                    lock.state = LockState.EXPIRED
                    self._commit(order, previous)
                log.info(f"Order {order_id}: {lock.role.value} lock {lock_id[:16]}... expired, "
                         f"waiting for its creator to refund")
                return
            key = f"refund:{lock_id}"
            if not self._begin(order, key, "refund", lock.chain, lock.id):
                return
            chain = lock.chain
            self._commit(order, previous)

        ledger = self.ledgers[chain]
        receipt, error = self._run(
            lambda: ledger.refund(LockHandle(chain, lock_id)),
            f"refund {chain}:{lock_id[:16]}",
        )

        with self.guard.hold(order_id, "refund_done"):
            order = self.store.get(order_id)
            previous = order.status
            order.in_flight.pop(key, None)
            lock = order.get_lock(lock_id)

            if error is None or isinstance(error, AlreadyRefunded):
                self._expire_lock(order, lock)
                lock.state = LockState.REFUNDED
                log.info(f"Order {order_id}: refunded {lock.role.value} lock {lock_id[:16]}...")
            elif isinstance(error, AlreadyClaimed):
                # Someone claimed first; the claim event will carry the secret
                log.info(f"Order {order_id}: {lock.role.value} lock {lock_id[:16]}... was claimed, not refunding")
                lock.state = LockState.CLAIMED
            elif isinstance(error, NotExpired):
                log.warning(f"Order {order_id}: refund of {lock_id[:16]}... too early: {error}")
            else:
                self._mark_failed_call(order, error)

            self._refresh_status(order)
            self._commit(order, previous)

    def _drive(self, order_id: str):
        """Re-issue whatever the order is waiting on (after resume or restart)."""
        order = self.store.get(order_id)
        if order.terminal:
            return
        if order.status == OrderStatus.PENDING and order.lock_source and order.source_lock is None:
            self._lock_source(order_id)
            return
        self._fill_and_lock(order_id)
        self._settle(order_id)

        order = self.store.get(order_id)
        for lock in order.locks:
            if lock.terminal:
                continue
            if self.ledgers[lock.chain].chain_time() >= lock.timelock:
                self.on_lock_expired(order_id, lock.id)

    # =========================================================================
    # Helpers (caller holds the order lock)
    # =========================================================================

    def _verify_source_lock(self, order: Order, lock: Lock):
        if lock.amount != order.source_amount:
            raise ProtocolViolation(ReasonCode.AMOUNT_MISMATCH,
                                    f"source lock amount {lock.amount} != {order.source_amount}")
        if lock.hashlock != order.hashlock_for(order.source_chain):
            raise ProtocolViolation(ReasonCode.HASHLOCK_MISMATCH,
                                    f"source lock hashlock {lock.hashlock[:16]}... does not match order")
        validate_timelock_margin(lock.timelock, order.timelock_dest, self.config.min_timelock_margin)

    def _mark_claimed(self, order: Order, lock: Lock, secret: str):
        lock.state = LockState.CLAIMED
        lock.secret = normalize_hex(secret)
        # A successful claim makes the secret public
        self.secrets.observe_claim(lock.chain, lock.hashlock, secret)

        if lock.fill_id:
            fill = order.get_fill(lock.fill_id)
            if fill is not None and fill.status != FillStatus.CLAIMED:
                fill.claimed = True
                fill.status = FillStatus.CLAIMED
                self.deposits.settle_if_held(order, fill.id)
            self._maybe_disclose_master(order)

    def _maybe_disclose_master(self, order: Order):
        """Per-fill orders: the master secret (source hashlock) goes public once every fill is claimed."""
        if order.fill_secret_mode != FillSecretMode.PER_FILL:
            return
        if order.filled_amount != order.source_amount:
            return
        active = [f for f in order.fills if f.active]
        if not active or any(f.status != FillStatus.CLAIMED for f in active):
            return
        if self.secrets.holds(order.hashlock) and self.secrets.revealed(order.hashlock) is None:
            self.secrets.disclose(order.hashlock, order.dest_chain)
            log.info(f"Order {order.id}: all fills claimed, master secret released")

    def _expire_lock(self, order: Order, lock: Lock):
        """Lock passed its timelock unclaimed: close its fill and forfeit the deposit."""
        if lock.state == LockState.CREATED:
            lock.state = LockState.EXPIRED
        if lock.fill_id:
            fill = order.get_fill(lock.fill_id)
            if fill is not None and fill.active and fill.status != FillStatus.CLAIMED:
                self.allocator.release(order, fill.id, FillStatus.EXPIRED)
                self.deposits.settle_if_held(order, fill.id, forfeit=True)

    def _refresh_status(self, order: Order):
        """Derive the order status from its locks."""
        if order.terminal:
            return
        src = order.source_lock
        dests = order.dest_locks
        locks = ([src] if src else []) + dests
        any_claimed = any(l.state == LockState.CLAIMED for l in locks)
        any_refunded = any(l.state == LockState.REFUNDED for l in locks)

        creating = any(m.get("action") == "create_lock" and self._is_fresh(m) for m in order.in_flight.values())

        if (src and src.state == LockState.CLAIMED and dests and not creating
                and all(l.state == LockState.CLAIMED for l in dests)):
            self._set_status(order, OrderStatus.COMPLETED)
        elif src and src.state == LockState.REFUNDED and all(l.state == LockState.REFUNDED for l in dests):
            self._set_status(order, OrderStatus.REFUNDED)
        elif any_claimed and any_refunded:
            if order.reason != ReasonCode.MIXED_OUTCOME.value:
                log.error(f"Order {order.id}: MIXED OUTCOME - some locks claimed, others refunded")
            self._mark_stuck(order, ReasonCode.MIXED_OUTCOME, "mixed outcome")
        elif order.status == OrderStatus.STUCK:
            return
        elif dests:
            self._set_status(order, OrderStatus.DEST_LOCKED)
        elif src:
            self._set_status(order, OrderStatus.SOURCE_LOCKED)

    def _set_status(self, order: Order, status: OrderStatus, reason: Optional[ReasonCode] = None):
        if reason is not None:
            order.reason = reason.value
        if order.status == status:
            return
        if status == OrderStatus.STUCK:
            order.stuck_from = order.status.value
        order.status = status
        if status == OrderStatus.COMPLETED:
            order.completed_at = now()
            self.deposits.charge_fee(order)
        if status in (OrderStatus.COMPLETED, OrderStatus.REFUNDED, OrderStatus.CANCELLED):
            # Fills that never reached the chain give their amount and deposit back
            for fill in order.fills:
                if fill.status == FillStatus.ACCEPTED:
                    self.allocator.release(order, fill.id, FillStatus.CANCELLED)
                    self.deposits.settle_if_held(order, fill.id)

    def _mark_stuck(self, order: Order, reason: ReasonCode, detail: str):
        if order.status != OrderStatus.STUCK:
            log.error(f"Order {order.id} STUCK ({reason.value}): {detail}")
        self._set_status(order, OrderStatus.STUCK, reason)

    def _mark_failed_call(self, order: Order, error: Exception):
        reason = ReasonCode.RETRIES_EXHAUSTED if isinstance(error, RetriesExhausted) else ReasonCode.CHAIN_ERROR
        self._mark_stuck(order, reason, str(error))

    def _marker_for(self, order: Order, lock_id: str) -> Optional[Dict[str, Any]]:
        for marker in order.in_flight.values():
            if marker.get("lock_id") == lock_id:
                return marker
        return None

    def _is_fresh(self, marker: Dict[str, Any]) -> bool:
        return time.time() - marker["since"] < self.config.in_flight_ttl

    def _fresh_marker(self, order: Order, key: str) -> bool:
        marker = order.in_flight.get(key)
        return bool(marker) and self._is_fresh(marker)

    def _adopt_created(self, order: Order, marker: Dict[str, Any], lock_id: str, amount: int,
                       hashlock: str, timelock: int, sender: Optional[str], receiver: Optional[str]):
        """Record a lock we created whose create call never reported back."""
        for key in [k for k, m in order.in_flight.items() if m.get("lock_id") == lock_id]:
            order.in_flight.pop(key)
        fill_id = marker.get("fill_id")
        order.locks.append(Lock(
            id=lock_id,
            chain=marker["chain"],
            role=LockRole.DEST if fill_id else LockRole.SOURCE,
            amount=amount,
            hashlock=normalize_hex(hashlock),
            timelock=timelock,
            owned=True,
            fill_id=fill_id,
            sender=sender or "",
            receiver=receiver or "",
        ))
        if fill_id:
            fill = order.get_fill(fill_id)
            if fill is not None:
                fill.status = FillStatus.LOCKED
                fill.lock_id = lock_id
        self._refresh_status(order)

    def _find_lock(self, chain: str, lock_id: str):
        """Snapshot of a lock on its chain, or None if it is not there (or cannot be read)."""
        ledger = self.ledgers[chain]
        snap, error = self._run(lambda: ledger.get_lock(LockHandle(chain, lock_id)),
                                f"look up {chain}:{lock_id[:16]}")
        return snap if error is None else None

    def _begin(self, order: Order, key: str, action: str, chain: str, lock_id: str,
               fill_id: Optional[str] = None) -> bool:
        """Set an in-flight marker. False if a fresh marker for the same action exists."""
        if self._fresh_marker(order, key):
            log.debug(f"Order {order.id}: {key} already in flight")
            return False
        order.in_flight[key] = {
            "action": action,
            "chain": chain,
            "lock_id": lock_id,
            "fill_id": fill_id,
            "owner": self.config.instance_id,
            "since": time.time(),
        }
        return True

    def _commit(self, order: Order, previous: OrderStatus) -> Order:
        saved = self.store.put(order)
        if saved.status != previous:
            reason = f" ({saved.reason})" if saved.reason else ""
            log.info(f"Order {saved.id}: {previous.value} -> {saved.status.value}{reason}")
            if saved.status in TERMINAL_STATUSES or saved.status == OrderStatus.STUCK:
                self.notifier.emit(saved.status.value, saved)
        self._notify_listeners(saved)
        return saved

    def _notify_listeners(self, order: Order):
        for listener in self._listeners:
            try:
                listener(order)
            except Exception as e:
                log.error(f"Lock listener error: {e}")

    # =========================================================================
    # Retries
    # =========================================================================

    def _call_with_retries(self, fn: Callable[[], Any], what: str) -> Any:
        delay = self.config.backoff_base
        for attempt in range(1, self.config.max_attempts + 1):
            try:
                return fn()
            except TransientChainError as e:
                if attempt == self.config.max_attempts:
                    raise RetriesExhausted(f"{what}: {e} (after {attempt} attempts)") from e
                log.warning(f"{what} failed (attempt {attempt}/{self.config.max_attempts}): {e}, "
                            f"retrying in {delay:.1f}s")
                time.sleep(delay)
                delay = min(delay * 2, self.config.backoff_max)

    def _run(self, fn: Callable[[], Any], what: str) -> Tuple[Any, Optional[Exception]]:
        try:
            return self._call_with_retries(fn, what), None
        except (LedgerError, SwapError) as e:
            return None, e
        except Exception as e:
            log.exception(f"{what}: unexpected error")
            return None, e

    # =========================================================================
    # Dispatcher
    # =========================================================================

    def _safe_handle(self, event: ChainEvent):
        try:
            self.handle_event(event)
        except (VersionConflict, LeaseHeld, OrderLockTimeout) as e:
            log.warning(f"Event {event.key} deferred: {e}")
            self._requeue(event)
        except Exception:
            log.exception(f"Failed to handle event {event.key}")

    def drain(self) -> int:
        """Process every queued event on the calling thread. Returns the count."""
        count = 0
        while True:
            try:
                event = self.events.get_nowait()
            except queue.Empty:
                return count
            self._safe_handle(event)
            count += 1

    def start(self):
        """Start dispatching events to the worker pool."""
        if self._dispatcher and self._dispatcher.is_alive():
            return
        self._stop.clear()
        self._pool = ThreadPoolExecutor(max_workers=self.config.workers, thread_name_prefix="coordinator")
        self._dispatcher = threading.Thread(target=self._dispatch_loop, name="coordinator-dispatch", daemon=True)
        self._dispatcher.start()
        log.info(f"Coordinator started ({self.config.workers} workers)")

    def stop(self):
        self._stop.set()
        if self._dispatcher:
            self._dispatcher.join(timeout=5)
        if self._pool:
            self._pool.shutdown(wait=True)
        self.notifier.close()
        log.info("Coordinator stopped")

    def _dispatch_loop(self):
        while not self._stop.is_set():
            try:
                event = self.events.get(timeout=0.5)
            except queue.Empty:
                continue
            self._pool.submit(self._safe_handle, event)
