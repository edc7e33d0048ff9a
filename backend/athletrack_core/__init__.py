"""Avatar URL signing and caching for the AthleTrack admin backend."""

from .avatars import AvatarBatch, AvatarService, LookupSource, ResolutionStatus, SignResult
from .cache import SignedUrlCache
from .paths import normalize_avatar_path
from .profiles import CapabilityProbe, ProfileAvatarRef
from .settings import AvatarSettings
from .supabase_rest import SupabaseRequestError
from .versioning import with_version

__all__ = [
    "AvatarBatch",
    "AvatarService",
    "AvatarSettings",
    "CapabilityProbe",
    "LookupSource",
    "ProfileAvatarRef",
    "ResolutionStatus",
    "SignResult",
    "SignedUrlCache",
    "SupabaseRequestError",
    "normalize_avatar_path",
    "with_version",
]
