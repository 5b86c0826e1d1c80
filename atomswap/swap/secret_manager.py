"""
Secret Manager.

Generates swap secrets, precomputes one hashlock per chain (each chain may
verify a different digest), and caches secrets revealed on chain.

Plaintext of a generated secret lives only in this process's memory. It is
never written to the Order Store.
"""

import hashlib
import logging
import threading
import time
from typing import Dict, Iterable, Optional

from ..core import Secret, generate_secret, hash_secret, normalize_hex

log = logging.getLogger(__name__)


class SecretManager:
    """Per-chain digests and the revealed-secret cache."""

    def __init__(self, hash_functions: Dict[str, str]):
        # chain name -> "sha256" | "keccak256"
        self.hash_functions = dict(hash_functions)
        # Every per-chain digest of a secret points at the same Secret
        self._by_hashlock: Dict[str, Secret] = {}
        self._lock = threading.Lock()

    def digest(self, chain: str, secret_hex: str) -> str:
        return hash_secret(self.hash_functions[chain], secret_hex)

    def digests(self, secret_hex: str, chains: Optional[Iterable[str]] = None) -> Dict[str, str]:
        chains = list(chains) if chains is not None else list(self.hash_functions)
        return {chain: self.digest(chain, secret_hex) for chain in chains}

    def _index(self, secret: Secret):
        for hashlock in secret.hashlocks.values():
            self._by_hashlock[hashlock] = secret

    def generate(self) -> Dict[str, str]:
        """New secret. Returns its hashlock on every configured chain."""
        plaintext = generate_secret()
        secret = Secret(hashlocks=self.digests(plaintext), plaintext=plaintext)
        with self._lock:
            self._index(secret)
        return dict(secret.hashlocks)

    def derive(self, master_hashlock: str, index: int) -> Dict[str, str]:
        """
        Derive the secret of fill `index` from a held master secret.

        fill_secret = sha256(master || index as 4 bytes big-endian)

        Returns:
            the fill secret's hashlock on every configured chain
        """
        with self._lock:
            master = self._by_hashlock.get(normalize_hex(master_hashlock))
            if master is None or master.plaintext is None:
                raise KeyError(f"Master secret for {master_hashlock[:16]}... is not held")
            raw = bytes.fromhex(master.plaintext) + index.to_bytes(4, "big")
            plaintext = hashlib.sha256(raw).hexdigest()
            secret = Secret(hashlocks=self.digests(plaintext), plaintext=plaintext)
            self._index(secret)
        return dict(secret.hashlocks)

    def holds(self, hashlock: str) -> bool:
        with self._lock:
            secret = self._by_hashlock.get(normalize_hex(hashlock))
            return secret is not None and secret.plaintext is not None

    def plaintext(self, hashlock: str) -> Optional[str]:
        """Held plaintext (generating side only), revealed or not."""
        with self._lock:
            secret = self._by_hashlock.get(normalize_hex(hashlock))
            return secret.plaintext if secret else None

    def revealed(self, hashlock: str) -> Optional[str]:
        """Plaintext if it is public, else None."""
        with self._lock:
            secret = self._by_hashlock.get(normalize_hex(hashlock))
            if secret is None or not secret.revealed:
                return None
            return secret.plaintext

    def disclose(self, hashlock: str, chain: Optional[str] = None) -> str:
        """Mark a held secret as public (it has been, or is about to be, used in a claim)."""
        with self._lock:
            secret = self._by_hashlock.get(normalize_hex(hashlock))
            if secret is None or secret.plaintext is None:
                raise KeyError(f"No secret held for {hashlock[:16]}...")
            if not secret.revealed:
                secret.revealed_on_chain = chain
                secret.revealed_at = int(time.time())
                log.info(f"Secret for {hashlock[:16]}... disclosed")
            return secret.plaintext

    def observe_claim(self, chain: str, hashlock: str, secret_hex: str) -> bool:
        """
        Cache a secret seen in a claim on `chain`.

        Returns False if the secret does not satisfy the hashlock under that
        chain's digest (the caller treats this as a protocol violation).
        """
        secret_hex = normalize_hex(secret_hex)
        hashlock = normalize_hex(hashlock)
        if self.digest(chain, secret_hex) != hashlock:
            log.error(f"[{chain}] Revealed secret does not match hashlock {hashlock[:16]}...")
            return False

        with self._lock:
            secret = self._by_hashlock.get(hashlock)
            if secret is None:
                secret = Secret(hashlocks=self.digests(secret_hex))
                self._index(secret)
            if secret.plaintext is None:
                secret.plaintext = secret_hex
            if not secret.revealed:
                secret.revealed_on_chain = chain
                secret.revealed_at = int(time.time())
                log.info(f"[{chain}] Secret revealed for {hashlock[:16]}...")
        return True
