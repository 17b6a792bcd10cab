from app.directory.client import DirectoryClient, DirectoryFetchError, HttpDirectoryClient
from app.directory.schemas import (
    DirectoryBusiness,
    DirectoryContactInfo,
    DirectoryOwner,
    DirectoryUser,
    normalize_sentinel,
    parse_business,
)

__all__ = [
    "DirectoryClient",
    "DirectoryFetchError",
    "HttpDirectoryClient",
    "DirectoryBusiness",
    "DirectoryContactInfo",
    "DirectoryOwner",
    "DirectoryUser",
    "normalize_sentinel",
    "parse_business",
]
