"""
Per-user deterministic receiving addresses.

Each merchant user owns an encrypted master seed and a monotonically
increasing counter. Every issued address sits at
``{prefix}/{user_id}/0/{counter}`` and is reproducible from the seed alone.
"""

from refpay.crypto.encryption import SeedEncryption
from refpay.crypto.hd import build_path, derive_keypair, generate_user_seed
from refpay.crypto.interfaces import UserTrackingStore
from refpay.errors import ConflictError, DerivationError, NotFoundError, ValidationError
from refpay.logging_config import get_logger
from refpay.models import DerivedAddress

logger = get_logger("address_deriver")


class AddressDeriver:
    """
    Issues never-reused receiving addresses.

    Responsibilities:
    - Creating a user's encrypted master seed on first use
    - Reserving the next counter with compare-and-increment
    - Reconstructing historical addresses without side effects
    """

    def __init__(
        self,
        store: UserTrackingStore,
        encryption: SeedEncryption,
        master_seed_secret: str,
        path_prefix: str = "m/44'/501'/2024'",
        max_conflict_retries: int = 1,
    ):
        self.store = store
        self.encryption = encryption
        self.master_seed_secret = master_seed_secret
        self.path_prefix = path_prefix
        self.max_conflict_retries = max_conflict_retries

    def derive_next(self, user_id: str) -> DerivedAddress:
        """
        Reserves the user's next counter and returns the address derived for it.

        The counter is durably committed before the address is returned. A lost
        counter race is retried with freshly read state up to
        ``max_conflict_retries`` times.

        Raises:
            ValidationError: user_id is empty or contains a path separator
            DerivationError: The stored seed cannot be decrypted
            ConflictError: Every attempt lost the counter race
        """
        self._validate_user_id(user_id)

        attempt = 0
        while True:
            state = self.store.get_or_init(user_id, lambda: self._new_encrypted_seed(user_id))
            seed = self._decrypt_seed(user_id, state.encrypted_seed)

            try:
                counter = self.store.increment_counter(user_id, state.counter)
            except ConflictError:
                if attempt >= self.max_conflict_retries:
                    logger.error(
                        "derivation_counter_conflict",
                        user_id=user_id,
                        attempts=attempt + 1,
                    )
                    raise
                attempt += 1
                logger.info(
                    "derivation_counter_retry",
                    user_id=user_id,
                    stale_counter=state.counter,
                )
                continue

            derived = self._derive(seed, user_id, counter)
            logger.info(
                "payment_address_derived",
                user_id=user_id,
                counter=counter,
                derivation_path=derived.derivation_path,
                address=derived.address,
            )
            return derived

    def derive_range(
        self, user_id: str, start: int = 1, end: int | None = None
    ) -> list[DerivedAddress]:
        """
        Reproduces the addresses for counters ``start..end`` inclusive.

        Issued counters start at 1, so the defaults cover every address handed
        out so far. Performs no writes.

        Raises:
            NotFoundError: The user has never derived an address
            DerivationError: The stored seed cannot be decrypted
        """
        self._validate_user_id(user_id)
        state = self.store.get(user_id)
        if state is None:
            raise NotFoundError(f"No derivation state for user {user_id}")

        last = state.counter if end is None else end
        if start < 0 or last < start:
            raise ValidationError(f"Invalid counter range {start}..{last}")

        seed = self._decrypt_seed(user_id, state.encrypted_seed)
        return [self._derive(seed, user_id, counter) for counter in range(start, last + 1)]

    def payment_count(self, user_id: str) -> int:
        state = self.store.get(user_id)
        return state.total_payments if state else 0

    def _derive(self, seed: bytes, user_id: str, counter: int) -> DerivedAddress:
        path = build_path(self.path_prefix, user_id, counter)
        keypair = derive_keypair(seed, path)
        return DerivedAddress(
            address=str(keypair.pubkey()), counter=counter, derivation_path=path
        )

    def _new_encrypted_seed(self, user_id: str) -> bytes:
        seed = generate_user_seed(self.master_seed_secret, user_id)
        return self.encryption.encrypt(seed, user_id)

    def _decrypt_seed(self, user_id: str, encrypted_seed: bytes) -> bytes:
        try:
            return self.encryption.decrypt(encrypted_seed, user_id)
        except ValueError as e:
            logger.error("derivation_seed_unusable", user_id=user_id, error=str(e))
            raise DerivationError(
                f"Seed for user {user_id} cannot be decrypted; operator reset required"
            ) from e

    @staticmethod
    def _validate_user_id(user_id: str) -> None:
        if not user_id or not user_id.strip():
            raise ValidationError("user_id is required")
        if "/" in user_id:
            raise ValidationError("user_id cannot contain '/'")
