from __future__ import annotations

from dataclasses import dataclass, field, asdict
from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field, field_validator


class Role(str, Enum):
    ADMIN = "admin"
    USER = "user"


class BookStatus(str, Enum):
    AVAILABLE = "AVAILABLE"
    LOANED = "LOANED"


class LoanStatus(str, Enum):
    ACTIVE = "ACTIVE"
    RETURNED = "RETURNED"


class NotificationType(str, Enum):
    LOGIN = "LOGIN"
    LOAN = "LOAN"
    RETURN = "RETURN"


@dataclass
class Profile:
    """Kullanıcı dizinindeki bir profil satırı."""
    id: str
    email: str
    full_name: Optional[str] = None
    role: str = Role.USER.value
    created_at: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @staticmethod
    def from_dict(data: Dict[str, Any]) -> "Profile":
        return Profile(
            id=data["id"],
            email=data["email"],
            full_name=data.get("full_name"),
            role=data.get("role") or Role.USER.value,
            created_at=data.get("created_at"),
        )


@dataclass
class Book:
    """Katalogdaki tek bir fiziksel kitap."""
    id: int
    title: str
    author: str
    category: Optional[str] = None
    status: str = BookStatus.AVAILABLE.value
    is_active: bool = True
    created_at: Optional[str] = None

    @property
    def is_available(self) -> bool:
        return self.is_active and self.status == BookStatus.AVAILABLE.value

    def __str__(self) -> str:  # pragma: no cover - string formatting trivial
        return f"{self.title} by {self.author} (#{self.id})"

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @staticmethod
    def from_dict(data: Dict[str, Any]) -> "Book":
        return Book(
            id=data["id"],
            title=data["title"],
            author=data["author"],
            category=data.get("category"),
            status=data.get("status") or BookStatus.AVAILABLE.value,
            # SQLite boolean değerleri 0/1 olarak döner
            is_active=bool(data.get("is_active", True)),
            created_at=data.get("created_at"),
        )


@dataclass
class Loan:
    """Bir kitap ile bir kullanıcı arasındaki ödünç bileti."""
    id: int
    book_id: int
    user_id: str
    status: str = LoanStatus.ACTIVE.value
    loan_date: Optional[str] = None
    return_date: Optional[str] = None
    # İsteğe bağlı birleştirilmiş alanlar (liste görünümleri için)
    book: Optional[Dict[str, Any]] = None
    profile: Optional[Dict[str, Any]] = None

    @property
    def is_active(self) -> bool:
        return self.status == LoanStatus.ACTIVE.value

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @staticmethod
    def from_dict(data: Dict[str, Any]) -> "Loan":
        return Loan(
            id=data["id"],
            book_id=data["book_id"],
            user_id=data["user_id"],
            status=data.get("status") or LoanStatus.ACTIVE.value,
            loan_date=data.get("loan_date"),
            return_date=data.get("return_date"),
            book=data.get("book"),
            profile=data.get("profile"),
        )


@dataclass
class Notification:
    id: int
    type: str
    message: str
    user_id: Optional[str] = None
    is_read: bool = False
    created_at: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @staticmethod
    def from_dict(data: Dict[str, Any]) -> "Notification":
        return Notification(
            id=data["id"],
            type=data["type"],
            message=data["message"],
            user_id=data.get("user_id"),
            is_read=bool(data.get("is_read", False)),
            created_at=data.get("created_at"),
        )


@dataclass
class SessionUser:
    """Oturumun tuttuğu kullanıcı izdüşümü (kalıcı anlık görüntüye yazılan kısım)."""
    id: str
    email: str
    name: str
    role: str = Role.USER.value

    @property
    def is_admin(self) -> bool:
        return self.role == Role.ADMIN.value

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @staticmethod
    def from_dict(data: Dict[str, Any]) -> "SessionUser":
        return SessionUser(
            id=data["id"],
            email=data["email"],
            name=data.get("name") or data["email"],
            role=data.get("role") or Role.USER.value,
        )

    @staticmethod
    def fallback(user_id: str, email: str) -> "SessionUser":
        """Profil okunamadığında kullanılan en küçük kimlik."""
        return SessionUser(id=user_id, email=email, name=email, role=Role.USER.value)


@dataclass
class AuthUser:
    """Kimlik doğrulama sağlayıcısının bildiği kullanıcı."""
    id: str
    email: str
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class AuthSession:
    access_token: str
    user: AuthUser
    expires_at: str


# --- Girdi modelleri ---

class Credentials(BaseModel):
    """Parola ile giriş ve kayıt için kimlik bilgileri."""
    email: str = Field(..., min_length=3, max_length=320)
    password: str = Field(..., min_length=6, max_length=128)
    full_name: Optional[str] = Field(None, max_length=255)

    @field_validator("email")
    @classmethod
    def _normalize_email(cls, value: str) -> str:
        value = value.strip().lower()
        if "@" not in value or value.startswith("@") or value.endswith("@"):
            raise ValueError("Geçersiz e-posta adresi")
        return value


class BookInput(BaseModel):
    """Katalog yönetimi için kitap girdisi. Durum geçişleri rezervasyon servisine aittir."""
    title: str = Field(..., min_length=1, max_length=255)
    author: str = Field(..., min_length=1, max_length=255)
    category: Optional[str] = Field(None, max_length=100)


class BookUpdate(BaseModel):
    title: Optional[str] = Field(None, min_length=1, max_length=255)
    author: Optional[str] = Field(None, min_length=1, max_length=255)
    category: Optional[str] = Field(None, max_length=100)
