from app.models.user import User
from app.models.admin import Admin
from app.models.upload import Upload

__all__ = [
    "User",
    "Admin",
    "Upload",
]
