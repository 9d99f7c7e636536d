from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
import hashlib
import logging
import re
import secrets
from typing import Any

import pyotp
from sqlalchemy import delete, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from authbridge.core.clock import as_utc, utc_now
from authbridge.core.config import get_settings
from authbridge.core.errors import DatabaseError, ValidationError
from authbridge.core.logging import mask_phone
from authbridge.domain.models import MfaSmsCode, User, UserMfaSettings
from authbridge.providers.identity.base import format_phone_number
from authbridge.providers.sms.senders import SmsSender
from authbridge.services.audit import RequestContext, record_event
from authbridge.services.security.events import ACTION_SMS, record_security_event
from authbridge.services.security.rate_limit import enforce_attempt_rate_limit


logger = logging.getLogger(__name__)

METHOD_TOTP = "totp"
METHOD_SMS = "sms"
METHOD_BACKUP = "backup"

PURPOSE_SETUP = "setup"
PURPOSE_LOGIN = "login"

_SIX_DIGITS = re.compile(r"^\d{6}$")
_BACKUP_CODE = re.compile(r"^[0-9A-F]{8}$")


@dataclass(frozen=True)
class TotpSetup:
    secret: str
    provisioning_uri: str
    backup_codes: list[str]


@dataclass(frozen=True)
class SmsDispatch:
    phone_number: str
    expires_at: datetime


@dataclass(frozen=True)
class MfaVerification:
    method: str
    remaining_backup_codes: int


def hash_code(code: str) -> str:
    return hashlib.sha256(code.encode("utf-8")).hexdigest()


def normalize_backup_code(code: str) -> str:
    # Users paste codes with separators or lower case.
    return re.sub(r"[\s-]", "", code).upper()


def generate_backup_codes(count: int | None = None) -> list[str]:
    # 8 upper-case hex characters each; only hashes are persisted.
    total = count if count is not None else get_settings().mfa_backup_code_count
    return [secrets.token_hex(4).upper() for _ in range(total)]


def generate_sms_code() -> str:
    return f"{secrets.randbelow(1_000_000):06d}"


async def get_mfa_settings(
    session: AsyncSession, user_id: int, *, for_update: bool = False
) -> UserMfaSettings | None:
    query = select(UserMfaSettings).where(UserMfaSettings.user_id == user_id)
    if for_update:
        # Serialize code consumption so a backup code or TOTP step is used once.
        query = query.with_for_update()
    result = await session.execute(query)
    return result.scalar_one_or_none()


async def _get_or_create_settings(session: AsyncSession, user_id: int) -> UserMfaSettings:
    settings_row = await get_mfa_settings(session, user_id, for_update=True)
    if settings_row is not None:
        return settings_row
    try:
        settings_row = UserMfaSettings(user_id=user_id, backup_codes=[])
        session.add(settings_row)
        await session.flush()
        return settings_row
    except IntegrityError:
        await session.rollback()
    settings_row = await get_mfa_settings(session, user_id, for_update=True)
    if settings_row is None:
        raise DatabaseError("mfa settings insert failed unexpectedly")
    return settings_row


def _issue_backup_codes(settings_row: UserMfaSettings) -> list[str]:
    codes = generate_backup_codes()
    settings_row.backup_codes = [hash_code(code) for code in codes]
    settings_row.backup_codes_generated_at = utc_now()
    return codes


def _match_totp_step(secret: str, code: str) -> int | None:
    # Return the time step the code belongs to within the accepted window.
    totp = pyotp.TOTP(secret)
    window = get_settings().mfa_totp_valid_window
    current = totp.timecode(utc_now())
    for offset in range(-window, window + 1):
        step = current + offset
        if secrets.compare_digest(totp.generate_otp(step), code):
            return step
    return None


def _accept_totp(settings_row: UserMfaSettings, code: str) -> bool:
    if not settings_row.totp_secret or not _SIX_DIGITS.match(code):
        return False
    step = _match_totp_step(settings_row.totp_secret, code)
    if step is None:
        return False
    last_step = settings_row.totp_last_used_step
    if last_step is not None and step <= last_step:
        logger.warning("totp_replay_rejected user_id=%s", settings_row.user_id)
        return False
    settings_row.totp_last_used_step = step
    return True


async def get_mfa_status(session: AsyncSession, *, user: User) -> dict[str, Any]:
    settings_row = await get_mfa_settings(session, user.id)
    if settings_row is None:
        return {
            "mfaEnabled": bool(user.mfa_enabled),
            "totpEnabled": False,
            "smsEnabled": False,
            "smsPhoneNumber": None,
            "backupCodesCount": 0,
        }
    return {
        "mfaEnabled": bool(user.mfa_enabled),
        "totpEnabled": bool(settings_row.totp_enabled),
        "smsEnabled": bool(settings_row.sms_enabled),
        "smsPhoneNumber": mask_phone(settings_row.sms_phone_number),
        "backupCodesCount": len(settings_row.backup_codes or []),
    }


async def setup_totp(
    session: AsyncSession, *, user: User, context: RequestContext | None = None
) -> TotpSetup:
    """Issue a new TOTP secret in the pending state.

    The factor is not enabled until ``verify_totp_setup`` sees a valid code.
    Backup codes are generated alongside the secret and shown only here.
    """
    settings = get_settings()
    settings_row = await _get_or_create_settings(session, user.id)
    secret = pyotp.random_base32()
    settings_row.totp_secret = secret
    settings_row.totp_enabled = False
    settings_row.totp_verified_at = None
    settings_row.totp_last_used_step = None
    backup_codes = _issue_backup_codes(settings_row)
    uri = pyotp.TOTP(secret).provisioning_uri(name=user.email, issuer_name=settings.mfa_issuer_name)
    await record_event(
        session=session,
        user_id=user.id,
        action="mfa_totp_setup_started",
        compliance_level="medium",
        resource_type="mfa",
        context=context,
    )
    await session.commit()
    return TotpSetup(secret=secret, provisioning_uri=uri, backup_codes=backup_codes)


async def verify_totp_setup(
    session: AsyncSession, *, user: User, code: str, context: RequestContext | None = None
) -> None:
    # Pending -> Enabled; the first good code also turns MFA on for the user.
    settings_row = await get_mfa_settings(session, user.id, for_update=True)
    if settings_row is None or not settings_row.totp_secret:
        raise ValidationError("TOTP setup has not been started")
    if not _accept_totp(settings_row, code.strip()):
        await record_event(
            session=session,
            user_id=user.id,
            action="mfa_totp_verification_failed",
            compliance_level="medium",
            outcome="failure",
            resource_type="mfa",
            context=context,
            commit=True,
        )
        raise ValidationError("Invalid verification code")
    now = utc_now()
    settings_row.totp_enabled = True
    settings_row.totp_verified_at = now
    user.mfa_enabled = True
    await record_event(
        session=session,
        user_id=user.id,
        action="mfa_totp_enabled",
        compliance_level="high",
        resource_type="mfa",
        new_values={"totp_enabled": True},
        context=context,
    )
    await session.commit()


async def _dispatch_sms_code(
    session: AsyncSession,
    *,
    user_id: int,
    phone_number: str,
    purpose: str,
    sender: SmsSender,
    context: RequestContext,
) -> SmsDispatch:
    settings = get_settings()
    await enforce_attempt_rate_limit(
        session=session, identity=str(user_id), action=ACTION_SMS, ip_address=context.ip_address
    )
    now = utc_now()
    # A new send supersedes every unconsumed code of the user.
    await session.execute(
        update(MfaSmsCode)
        .where(MfaSmsCode.user_id == user_id, MfaSmsCode.consumed_at.is_(None))
        .values(consumed_at=now)
    )
    code = generate_sms_code()
    expires_at = now + timedelta(minutes=settings.mfa_sms_code_ttl_minutes)
    session.add(
        MfaSmsCode(
            user_id=user_id,
            code_hash=hash_code(code),
            phone_number=phone_number,
            purpose=purpose,
            attempts=0,
            expires_at=expires_at,
            created_at=now,
        )
    )
    record_security_event(
        session,
        identifier=str(user_id),
        action=ACTION_SMS,
        success=True,
        user_id=user_id,
        ip_address=context.ip_address,
        user_agent=context.user_agent,
        metadata={"purpose": purpose},
    )
    await session.commit()
    await sender.send(
        phone_number,
        f"Your {settings.mfa_issuer_name} verification code is {code}. It expires in "
        f"{settings.mfa_sms_code_ttl_minutes} minutes.",
    )
    return SmsDispatch(phone_number=phone_number, expires_at=expires_at)


async def setup_sms(
    session: AsyncSession,
    *,
    user: User,
    phone_number: str,
    country_code: str | None,
    sender: SmsSender,
    context: RequestContext | None = None,
) -> SmsDispatch:
    # Store the number as pending and send a setup code to prove ownership.
    context = context or RequestContext()
    formatted = format_phone_number(phone_number, country_code)
    if not formatted or len(formatted) < 8:
        raise ValidationError("Invalid phone number")
    settings_row = await _get_or_create_settings(session, user.id)
    settings_row.sms_phone_number = formatted
    settings_row.sms_enabled = False
    settings_row.sms_verified_at = None
    await record_event(
        session=session,
        user_id=user.id,
        action="mfa_sms_setup_started",
        compliance_level="medium",
        resource_type="mfa",
        new_values={"sms_phone_number": mask_phone(formatted)},
        context=context,
    )
    await session.commit()
    return await _dispatch_sms_code(
        session,
        user_id=user.id,
        phone_number=formatted,
        purpose=PURPOSE_SETUP,
        sender=sender,
        context=context,
    )


async def send_sms_code(
    session: AsyncSession,
    *,
    user_id: int,
    sender: SmsSender,
    context: RequestContext | None = None,
) -> SmsDispatch:
    # Login codes go only to a verified number.
    settings_row = await get_mfa_settings(session, user_id)
    if settings_row is None or not settings_row.sms_enabled or not settings_row.sms_phone_number:
        raise ValidationError("SMS MFA is not enabled")
    return await _dispatch_sms_code(
        session,
        user_id=user_id,
        phone_number=settings_row.sms_phone_number,
        purpose=PURPOSE_LOGIN,
        sender=sender,
        context=context or RequestContext(),
    )


async def _consume_sms_code(session: AsyncSession, *, user_id: int, code: str, purpose: str) -> bool:
    # Only the newest live code counts; a wrong guess burns one attempt.
    settings = get_settings()
    result = await session.execute(
        select(MfaSmsCode)
        .where(
            MfaSmsCode.user_id == user_id,
            MfaSmsCode.purpose == purpose,
            MfaSmsCode.consumed_at.is_(None),
        )
        .order_by(MfaSmsCode.id.desc())
        .limit(1)
        .with_for_update()
    )
    record = result.scalar_one_or_none()
    if record is None:
        return False
    now = utc_now()
    if as_utc(record.expires_at) <= now or record.attempts >= settings.mfa_sms_max_attempts:
        return False
    if not secrets.compare_digest(record.code_hash, hash_code(code)):
        record.attempts += 1
        return False
    record.consumed_at = now
    return True


async def verify_sms_setup(
    session: AsyncSession, *, user: User, code: str, context: RequestContext | None = None
) -> list[str] | None:
    """Enable the SMS factor after the setup code is confirmed.

    Returns freshly generated backup codes when the user had none yet.
    """
    settings_row = await get_mfa_settings(session, user.id, for_update=True)
    if settings_row is None or not settings_row.sms_phone_number:
        raise ValidationError("SMS setup has not been started")
    if not await _consume_sms_code(session, user_id=user.id, code=code.strip(), purpose=PURPOSE_SETUP):
        await session.commit()
        raise ValidationError("Invalid or expired verification code")
    settings_row.sms_enabled = True
    settings_row.sms_verified_at = utc_now()
    user.mfa_enabled = True
    backup_codes = None
    if not settings_row.backup_codes:
        backup_codes = _issue_backup_codes(settings_row)
    await record_event(
        session=session,
        user_id=user.id,
        action="mfa_sms_enabled",
        compliance_level="high",
        resource_type="mfa",
        new_values={"sms_enabled": True},
        context=context,
    )
    await session.commit()
    return backup_codes


async def verify_mfa_token(
    session: AsyncSession, *, user_id: int, token: str
) -> MfaVerification | None:
    """Check a second factor during login: TOTP, then SMS, then backup code.

    The first match wins. SMS and backup codes are consumed; the TOTP step is
    recorded so the same code cannot be replayed. Changes are staged on the
    session and the caller commits.
    """
    settings_row = await get_mfa_settings(session, user_id, for_update=True)
    if settings_row is None:
        return None
    code = token.strip()
    remaining = len(settings_row.backup_codes or [])

    if settings_row.totp_enabled and _accept_totp(settings_row, code):
        return MfaVerification(method=METHOD_TOTP, remaining_backup_codes=remaining)

    if settings_row.sms_enabled and _SIX_DIGITS.match(code):
        if await _consume_sms_code(session, user_id=user_id, code=code, purpose=PURPOSE_LOGIN):
            return MfaVerification(method=METHOD_SMS, remaining_backup_codes=remaining)

    backup = normalize_backup_code(code)
    if _BACKUP_CODE.match(backup):
        hashed = hash_code(backup)
        codes = list(settings_row.backup_codes or [])
        if hashed in codes:
            codes.remove(hashed)
            # Assign a new list so the JSON column is flagged dirty.
            settings_row.backup_codes = codes
            if len(codes) <= 2:
                logger.warning("backup_codes_low user_id=%s remaining=%s", user_id, len(codes))
            return MfaVerification(method=METHOD_BACKUP, remaining_backup_codes=len(codes))
    return None


async def regenerate_backup_codes(
    session: AsyncSession, *, user: User, context: RequestContext | None = None
) -> list[str]:
    # Replaces the whole set; old codes stop working immediately.
    if not user.mfa_enabled:
        raise ValidationError("MFA is not enabled")
    settings_row = await _get_or_create_settings(session, user.id)
    codes = _issue_backup_codes(settings_row)
    await record_event(
        session=session,
        user_id=user.id,
        action="mfa_backup_codes_regenerated",
        compliance_level="high",
        resource_type="mfa",
        context=context,
    )
    await session.commit()
    return codes


async def disable_mfa(
    session: AsyncSession, *, user: User, context: RequestContext | None = None
) -> None:
    settings_row = await get_mfa_settings(session, user.id, for_update=True)
    old_values = {"mfa_enabled": bool(user.mfa_enabled)}
    if settings_row is not None:
        settings_row.totp_secret = None
        settings_row.totp_enabled = False
        settings_row.totp_verified_at = None
        settings_row.totp_last_used_step = None
        settings_row.sms_phone_number = None
        settings_row.sms_enabled = False
        settings_row.sms_verified_at = None
        settings_row.backup_codes = []
        settings_row.backup_codes_generated_at = None
    await session.execute(
        update(MfaSmsCode)
        .where(MfaSmsCode.user_id == user.id, MfaSmsCode.consumed_at.is_(None))
        .values(consumed_at=utc_now())
    )
    user.mfa_enabled = False
    await record_event(
        session=session,
        user_id=user.id,
        action="mfa_disabled",
        compliance_level="high",
        resource_type="mfa",
        old_values=old_values,
        new_values={"mfa_enabled": False},
        context=context,
    )
    await session.commit()
    logger.info("mfa_disabled user_id=%s", user.id)


async def cleanup_sms_codes(session: AsyncSession, *, older_than_hours: int = 24) -> int:
    # Consumed or expired codes are dead weight once the day has passed.
    cutoff = utc_now() - timedelta(hours=older_than_hours)
    result = await session.execute(
        delete(MfaSmsCode).where(or_(MfaSmsCode.consumed_at < cutoff, MfaSmsCode.expires_at < cutoff))
    )
    await session.commit()
    return int(result.rowcount or 0)
