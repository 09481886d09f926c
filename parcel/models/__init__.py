from .auth import ApiKey, LoginAttempt, User
from .db import Base, create_db_engine, create_session_factory
from .password import PasswordScheme, StoredPassword
from .team import Team, TeamMember
from .types import KeyType, new_key, parse_key, render_key
from .upload import OwnerKind, Tag, Upload, UploadOrder, UploadOwner, UploadTag

__all__ = [
	"ApiKey",
	"Base",
	"KeyType",
	"LoginAttempt",
	"OwnerKind",
	"PasswordScheme",
	"StoredPassword",
	"Tag",
	"Team",
	"TeamMember",
	"Upload",
	"UploadOrder",
	"UploadOwner",
	"UploadTag",
	"User",
	"create_db_engine",
	"create_session_factory",
	"new_key",
	"parse_key",
	"render_key",
]
