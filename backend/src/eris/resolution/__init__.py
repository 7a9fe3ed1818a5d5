"""Identity resolution, reconciliation and review for ERIS."""

from .matcher import NameMatcher
from .normalize import normalize_name, normalize_postcode
from .resolver import IdentityResolver, RegistrySnapshot

__all__ = [
    "IdentityResolver",
    "NameMatcher",
    "RegistrySnapshot",
    "normalize_name",
    "normalize_postcode",
]
