"""Dolaşım çekirdeğinin istisna hiyerarşisi."""


class CirculationError(Exception):
    """Tüm çekirdek hatalarının temeli."""
    pass


class StoreError(CirculationError):
    """Arka uç deposu bir isteği tamamlayamadığında."""
    pass


class StoreUnavailableError(StoreError):
    """Depoya bağlantı yok (çevrimdışı)."""
    pass


class ReservationError(CirculationError):
    """Ödünç verme / iade işlemi tutarsız girdilerle çağrıldığında."""
    pass


class BookNotFoundError(ReservationError, LookupError):
    pass


class LoanNotFoundError(ReservationError, LookupError):
    pass


class AuthError(CirculationError):
    """Kimlik doğrulama sağlayıcısından gelen hatalar; olduğu gibi iletilir."""
    pass


class InvalidCredentialsError(AuthError):
    pass


class UserAlreadyExistsError(AuthError):
    pass


class UnknownProviderError(AuthError):
    pass


class SessionExpiredError(AuthError):
    pass


class NotAuthenticatedError(AuthError):
    pass


class ExternalServiceError(CirculationError):
    """Harici bir HTTP hizmetine (ör. e-posta) ulaşılamadığında."""
    pass
