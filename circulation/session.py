"""
Oturum deposu: tek, enjekte edilebilir kimlik doğrulama durum makinesi.

Durumlar: INITIALIZING -> AUTHENTICATED | ANONYMOUS. Sağlayıcıdan gelen
SIGNED_OUT olayı durumu ANONYMOUS'a döndürür. Korunan her görünüm erişim
kontrolü için bu nesneyi kullanır ve kullanıcıya özel önbellek anahtarlarını
buradaki kimlikle oluşturur.
"""

import json
import logging
import os
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, Iterable, List, Optional, Union

from circulation.auth import (
    SIGNED_IN,
    SIGNED_OUT,
    AuthSubscription,
    LocalAuthProvider,
    OAuthRedirect,
)
from circulation.config import settings
from circulation.database import LocalStore
from circulation.models import AuthSession, AuthUser, Credentials, Profile, Role, SessionUser
from circulation.notifications import SideEffects

logger = logging.getLogger(__name__)


class SessionState(str, Enum):
    INITIALIZING = "INITIALIZING"
    AUTHENTICATED = "AUTHENTICATED"
    ANONYMOUS = "ANONYMOUS"


class GuardDecision(str, Enum):
    LOADING = "LOADING"
    REDIRECT_LOGIN = "REDIRECT_LOGIN"
    REDIRECT_HOME = "REDIRECT_HOME"
    ALLOW = "ALLOW"


HOME_ROUTES = {
    Role.ADMIN.value: "/admin/dashboard",
    Role.USER.value: "/user/catalog",
}
LOGIN_ROUTE = "/login"


@dataclass
class GuardResult:
    decision: GuardDecision
    redirect_to: Optional[str] = None


class SnapshotStorage:
    """JSON dosyasında tutulan basit anahtar-değer deposu (tarayıcı localStorage karşılığı)."""

    def __init__(self, path: Optional[str] = None):
        self.path = path or settings.snapshot_file

    def _read(self) -> Dict[str, Any]:
        if not os.path.exists(self.path):
            return {}
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                data = json.load(f)
            return data if isinstance(data, dict) else {}
        except (json.JSONDecodeError, OSError) as e:
            # Bozuk dosya boş depo gibi davranır
            logger.warning(f"Snapshot storage unreadable ({e}), starting empty")
            return {}

    def _write(self, data: Dict[str, Any]) -> None:
        directory = os.path.dirname(self.path)
        if directory:
            os.makedirs(directory, exist_ok=True)
        tmp_path = self.path + ".tmp"
        with open(tmp_path, "w", encoding="utf-8") as f:
            json.dump(data, f, ensure_ascii=False, indent=2)
        os.replace(tmp_path, self.path)

    def get(self, key: str) -> Optional[Any]:
        return self._read().get(key)

    def set(self, key: str, value: Any) -> None:
        data = self._read()
        data[key] = value
        self._write(data)

    def remove(self, key: str) -> None:
        data = self._read()
        if key in data:
            del data[key]
            self._write(data)

    def clear(self) -> None:
        if os.path.exists(self.path):
            os.remove(self.path)


class SessionStore:
    """Kimliği tutan, giriş/çıkış/kayıt işlemlerini sunan durum makinesi."""

    def __init__(self, auth: LocalAuthProvider, store: LocalStore, storage: SnapshotStorage,
                 side_effects: Optional[SideEffects] = None, snapshot_key: Optional[str] = None):
        self.auth = auth
        self.store = store
        self.storage = storage
        self.side_effects = side_effects
        self.snapshot_key = snapshot_key or settings.snapshot_key
        self.state = SessionState.INITIALIZING
        self.user: Optional[SessionUser] = None
        self.restored_from_snapshot = False
        # Oturum kapsamlı bayrak: giriş bildirimi bir kez yazılır
        self._login_notified = False
        self._subscription: Optional[AuthSubscription] = None
        self._cancel: Optional[Callable[[], None]] = None
        self._listeners: List[Callable[["SessionStore"], Any]] = []

    # ------------------------- Durum ------------------------- #
    @property
    def loading(self) -> bool:
        return self.state == SessionState.INITIALIZING

    @property
    def is_authenticated(self) -> bool:
        return self.user is not None and self.state != SessionState.ANONYMOUS

    @property
    def is_admin(self) -> bool:
        return self.is_authenticated and self.user.is_admin

    def on_change(self, callback: Callable[["SessionStore"], Any]) -> Callable[[], None]:
        self._listeners.append(callback)

        def remove() -> None:
            if callback in self._listeners:
                self._listeners.remove(callback)

        return remove

    def _notify_listeners(self) -> None:
        for callback in list(self._listeners):
            try:
                callback(self)
            except Exception as e:
                logger.error(f"Session listener failed: {e}")

    def _persist(self) -> None:
        try:
            self.storage.set(self.snapshot_key, {
                "user": self.user.to_dict() if self.user else None,
                "is_authenticated": self.is_authenticated,
                "is_admin": self.is_admin,
            })
        except OSError as e:
            logger.warning(f"Could not persist session snapshot: {e}")

    def _set_user(self, user: SessionUser) -> None:
        self.user = user
        self.state = SessionState.AUTHENTICATED
        self._persist()
        self._notify_listeners()

    def _clear_local(self) -> None:
        self.user = None
        self.state = SessionState.ANONYMOUS
        self._login_notified = False
        try:
            self.storage.clear()
        except OSError as e:
            logger.warning(f"Could not clear session snapshot: {e}")
        self._notify_listeners()

    def _restore_snapshot(self) -> None:
        snapshot = self.storage.get(self.snapshot_key)
        if not snapshot or not snapshot.get("is_authenticated") or not snapshot.get("user"):
            return
        try:
            self.user = SessionUser.from_dict(snapshot["user"])
        except (KeyError, TypeError) as e:
            logger.warning(f"Ignoring malformed session snapshot: {e}")
            return
        # Durum INITIALIZING kalır; uzak oturum doğrulanana kadar korumalar bekler
        self.restored_from_snapshot = True
        self._notify_listeners()

    # ------------------------- Başlatma ------------------------- #
    async def initialize(self) -> Callable[[], None]:
        """Mevcut oturumu çöz ve sağlayıcı olaylarını dinlemeye başla.

        Süreç başına bir kez çalışır; sonraki çağrılar aynı iptal fonksiyonunu
        döndürür. İptal fonksiyonu sağlayıcı dinleyicisini ayırır.
        """
        if self._cancel is not None:
            return self._cancel

        self._restore_snapshot()
        self._subscription = self.auth.on_auth_state_change(self._on_auth_event)

        def cancel() -> None:
            if self._subscription is not None:
                self._subscription.unsubscribe()
                self._subscription = None

        self._cancel = cancel

        try:
            session = await self.auth.get_session()
        except Exception as e:
            logger.warning(f"Session lookup failed, clearing local state: {e}")
            self._clear_local()
            return cancel

        if session is not None:
            # Anlık görüntü yalnızca ilk çizim içindir; rol ve ad her başlatmada profilden okunur
            await self.fetch_profile(session.user)
        elif self.state == SessionState.INITIALIZING:
            self.user = None
            self.state = SessionState.ANONYMOUS
            self._persist()
            self._notify_listeners()
        return cancel

    async def fetch_profile(self, auth_user: AuthUser) -> SessionUser:
        """Profili oku; okunamazsa en küçük kimliğe düş."""
        try:
            row = await self.store.select_one("profiles", {"id": auth_user.id})
        except Exception as e:
            logger.warning(f"Profile lookup failed for {auth_user.email}: {e}")
            user = SessionUser.fallback(auth_user.id, auth_user.email)
        else:
            if row is None:
                user = SessionUser.fallback(auth_user.id, auth_user.email)
            else:
                profile = Profile.from_dict(row)
                user = SessionUser(
                    id=auth_user.id,
                    email=auth_user.email,
                    name=profile.full_name or auth_user.email,
                    role=profile.role or Role.USER.value,
                )
        self._set_user(user)
        return user

    async def _resolve(self, auth_user: AuthUser) -> SessionUser:
        # Aynı kimlik için profil yeniden okunmaz (ör. token yenileme)
        if self.user is not None and self.user.id == auth_user.id:
            if self.state != SessionState.AUTHENTICATED:
                self._set_user(self.user)
            return self.user
        return await self.fetch_profile(auth_user)

    async def _on_auth_event(self, event: str, session: Optional[AuthSession]) -> None:
        if event == SIGNED_OUT:
            self._clear_local()
            return
        if session is None:
            return
        await self._resolve(session.user)
        if event == SIGNED_IN and not self._login_notified:
            self._login_notified = True
            if self.side_effects is not None:
                await self.side_effects.record_login(session.user)

    # ------------------------- İşlemler ------------------------- #
    @staticmethod
    def _credentials(credentials: Union[Credentials, Dict[str, Any]]) -> Credentials:
        if isinstance(credentials, Credentials):
            return credentials
        return Credentials(**credentials)

    async def login(self, credentials: Union[Credentials, Dict[str, Any]]) -> SessionUser:
        """Parola ile giriş. Kimlik hataları olduğu gibi iletilir, yeniden denenmez."""
        creds = self._credentials(credentials)
        session = await self.auth.sign_in_with_password(creds.email, creds.password)
        return await self._resolve(session.user)

    async def register(self, credentials: Union[Credentials, Dict[str, Any]]) -> SessionUser:
        creds = self._credentials(credentials)
        session = await self.auth.sign_up(creds.email, creds.password, creds.full_name)
        return await self._resolve(session.user)

    async def login_with_external_provider(self, name: str) -> OAuthRedirect:
        return await self.auth.sign_in_with_oauth(name)

    async def logout(self) -> None:
        """Yerel durumu uzak çağrıdan önce temizle; uzak hata yutulur."""
        self._clear_local()
        try:
            await self.auth.sign_out()
        except Exception as e:
            logger.error(f"Remote sign-out failed: {e}")

    # ------------------------- Rota koruması ------------------------- #
    def guard(self, allowed_roles: Optional[Iterable[str]] = None) -> GuardResult:
        """Korunan bir görünüme erişim kararı."""
        if self.loading:
            return GuardResult(GuardDecision.LOADING)
        if not self.is_authenticated:
            return GuardResult(GuardDecision.REDIRECT_LOGIN, LOGIN_ROUTE)
        roles = [r.value if isinstance(r, Role) else r for r in (allowed_roles or [])]
        if roles and self.user.role not in roles:
            return GuardResult(GuardDecision.REDIRECT_HOME, HOME_ROUTES.get(self.user.role, LOGIN_ROUTE))
        return GuardResult(GuardDecision.ALLOW)
