"""
RRL Core — Restaurant Review Ledger data model, storage and host primitives.

__version__ is the SDK version.
"""

__version__ = "0.1.0"

from .errors import (
    ErrorKind,
    LedgerError,
    NotFound,
    AlreadyExists,
    InvalidRating,
    InvalidInput,
    InvalidHash,
    Unauthorized,
    TransferFailure,
)
from .numeric import U128_MAX, checked_add, checked_sub, checked_mul, bump
from .models import (
    MediaType,
    RewardKind,
    Restaurant,
    Review,
    ReviewerStats,
    LoyaltyRecord,
    MediaItem,
    RestaurantAttachment,
    ReviewAttachment,
    MAX_MEDIA_PER_ENTITY,
    MIN_HASH_LENGTH,
    MAX_HASH_LENGTH,
    HIGH_QUALITY_RATING,
    export_json_schema,
)
from .canonical import canonicalize, canonicalize_entry
from .crypto import (
    sha256_hex,
    generate_keypair,
    sign_bytes,
    verify_signature,
    private_key_to_pem,
    private_key_from_pem,
    public_key_to_did_key,
    did_key_to_public_key,
)
from .journal import (
    EntryType,
    JournalEntry,
    EntrySeal,
    seal_entry,
    verify_entry,
    verify_journal,
    compute_journal_digest,
)
from .storage import Storage
from .host import (
    IdentityProvider,
    ClockProvider,
    TransferPrimitive,
    StaticIdentity,
    BlockClock,
    StorageCustody,
)
from .config import LedgerSettings, get_settings
