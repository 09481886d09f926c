from .api_keys import ApiKeyService
from .cache import CacheCleanup, CacheService, CacheSummary, remove_upload_files
from .lifecycle import Download, Preview, TransferMode, UploadEdit, UploadLifecycle
from .permissions import (
    DELETE,
    EDIT,
    RESET_DOWNLOADS,
    SHARE,
    TRANSFER,
    VIEW,
    Action,
    ActionKind,
    PermissionService,
    decide,
)
from .tags import TagService
from .teams import MemberPermissions, TeamListEntry, TeamService, TeamStats
from .uploads import UploadListEntry, UploadPage, UploadService, UploadStats
from .users import TeamMembership, UserListEntry, UserService, UserStats

__all__ = [
    "Action",
    "ActionKind",
    "ApiKeyService",
    "CacheCleanup",
    "CacheService",
    "CacheSummary",
    "DELETE",
    "Download",
    "EDIT",
    "MemberPermissions",
    "PermissionService",
    "Preview",
    "RESET_DOWNLOADS",
    "SHARE",
    "TRANSFER",
    "TagService",
    "TeamListEntry",
    "TeamMembership",
    "TeamService",
    "TeamStats",
    "TransferMode",
    "UploadEdit",
    "UploadLifecycle",
    "UploadListEntry",
    "UploadPage",
    "UploadService",
    "UploadStats",
    "UserListEntry",
    "UserService",
    "UserStats",
    "VIEW",
    "decide",
    "remove_upload_files",
]
