from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
import secrets

import pyotp

from .mailer import APP_NAME
from .yaml_store import TWO_FACTOR_AUTHENTICATOR, TWO_FACTOR_EMAIL, ReservationYamlRepository, UserRecord

EMAIL_CODE_TTL = timedelta(minutes=10)
TOTP_VALID_WINDOW = 2


@dataclass(frozen=True)
class TwoFactorSetup:
    secret: str
    provisioning_uri: str
    manual_entry_key: str

    def to_dict(self) -> dict[str, str]:
        return {
            "secret": self.secret,
            "provisioningUri": self.provisioning_uri,
            "manualEntryKey": self.manual_entry_key,
        }


def generate_setup(email: str) -> TwoFactorSetup:
    secret = pyotp.random_base32(length=32)
    uri = pyotp.TOTP(secret).provisioning_uri(name=f"{APP_NAME} ({email})", issuer_name=APP_NAME)
    manual = " ".join(secret[index : index + 4] for index in range(0, len(secret), 4))
    return TwoFactorSetup(secret=secret, provisioning_uri=uri, manual_entry_key=manual)


def verify_totp(secret: str, code: str, for_time: datetime | None = None) -> bool:
    """Accept codes from two 30-second steps either side of now."""
    normalized = str(code or "").replace(" ", "")
    if not secret or not normalized.isdigit():
        return False
    return pyotp.TOTP(secret).verify(normalized, for_time=for_time, valid_window=TOTP_VALID_WINDOW)


def enable_authenticator(repository: ReservationYamlRepository, user_id: int, secret: str, code: str) -> UserRecord:
    if not verify_totp(secret, code):
        raise ValueError("Invalid verification code")
    return repository.set_two_factor(user_id, True, TWO_FACTOR_AUTHENTICATOR, secret)


def enable_email(repository: ReservationYamlRepository, user_id: int) -> UserRecord:
    return repository.set_two_factor(user_id, True, TWO_FACTOR_EMAIL)


def disable(repository: ReservationYamlRepository, user_id: int) -> UserRecord:
    return repository.set_two_factor(user_id, False)


def generate_email_code() -> str:
    return f"{secrets.randbelow(900000) + 100000}"


def issue_email_code(repository: ReservationYamlRepository, user_id: int, now: datetime | None = None) -> str:
    effective_now = now or datetime.now()
    code = generate_email_code()
    repository.store_two_factor_code(user_id, code, effective_now + EMAIL_CODE_TTL, now=effective_now)
    return code


def verify_code(
    repository: ReservationYamlRepository,
    user: UserRecord,
    code: str,
    method: str,
    now: datetime | None = None,
) -> bool:
    if method == TWO_FACTOR_AUTHENTICATOR:
        if not user.two_factor_secret:
            raise ValueError("2FA not configured")
        return verify_totp(user.two_factor_secret, code, for_time=now)
    if method == TWO_FACTOR_EMAIL:
        return repository.consume_two_factor_code(user.user_id, str(code).strip(), now=now)
    raise ValueError("Unknown 2FA method")
