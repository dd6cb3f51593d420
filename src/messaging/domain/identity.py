"""
Sender identities as seen at the channel boundary.

Channels disagree on how a customer is identified: the Cloud API hands over a bare
MSISDN, the QR transport a full JID that is either phone-backed
("9665...@s.whatsapp.net") or an opaque linked id ("6717...@lid"), and Discord or
Instagram a platform user id. Each form is its own variant so that downstream code never
has to guess whether a string is a phone number.
"""
from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Optional, Union

_NON_DIGITS = re.compile(r"\D")

LINKED_ID_SUFFIX = "@lid"


def clean_phone(value: Optional[str]) -> str:
    """Digits of the user part of an identifier: drops "@server" and ":device" suffixes."""
    if not value:
        return ""
    user = value.split("@", 1)[0].split(":", 1)[0]
    return _NON_DIGITS.sub("", user)


def bare_identifier(value: str) -> str:
    """Legacy digits-only form that older conversations were stored under."""
    return clean_phone(value)


@dataclass(frozen=True)
class PhoneIdentity:
    number: str

    @property
    def external_id(self) -> str:
        return self.number

    @property
    def phone(self) -> Optional[str]:
        return self.number or None


@dataclass(frozen=True)
class JidIdentity:
    jid: str
    number: str

    @property
    def external_id(self) -> str:
        return self.jid

    @property
    def phone(self) -> Optional[str]:
        return self.number or None


@dataclass(frozen=True)
class LinkedIdentity:
    value: str

    @property
    def external_id(self) -> str:
        return self.value

    @property
    def phone(self) -> Optional[str]:
        # No phone number is recoverable from a linked id.
        return None


@dataclass(frozen=True)
class PlatformIdentity:
    platform: str
    user_id: str

    @property
    def external_id(self) -> str:
        return self.user_id

    @property
    def phone(self) -> Optional[str]:
        return None


SenderIdentity = Union[PhoneIdentity, JidIdentity, LinkedIdentity, PlatformIdentity]


def is_linked_id(value: Optional[str]) -> bool:
    return bool(value) and value.endswith(LINKED_ID_SUFFIX)


def identity_from_jid(jid: str, phone_hint: Optional[str] = None) -> SenderIdentity:
    """Classify a WhatsApp JID; ``phone_hint`` is the transport's resolved phone, if any."""
    jid = jid.strip()
    if is_linked_id(jid):
        return LinkedIdentity(jid)
    if "@" not in jid:
        return PhoneIdentity(clean_phone(jid))
    return JidIdentity(jid=jid, number=clean_phone(phone_hint) or clean_phone(jid))
