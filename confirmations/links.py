# confirmations/links.py
import logging
import math
import re
import secrets
import string
import threading
import time
from datetime import date, datetime, timezone
from typing import Iterable, List, Optional, Sequence, Tuple
from urllib.parse import urlencode

from email_validator import EmailNotValidError, validate_email

from .models import Confirmation, Link, parse_timestamp, utcnow_iso
from .storage import RecordStore

logger = logging.getLogger(__name__)

BASE36 = string.digits + string.ascii_lowercase
TOKEN_LENGTH = 26
UNIQUE_ID_RANDOM_LENGTH = 8

RECIPIENT_LINE = re.compile(r"^(.+?)\s*<(.+?)>$")


def to_base36(number: int) -> str:
    if number == 0:
        return "0"
    digits = []
    while number:
        number, rem = divmod(number, 36)
        digits.append(BASE36[rem])
    return "".join(reversed(digits))


def random_base36(length: int) -> str:
    return "".join(secrets.choice(BASE36) for _ in range(length))


def generate_token() -> str:
    # Uniqueness is probabilistic only; nothing checks stored tokens.
    return random_base36(TOKEN_LENGTH)


def is_valid_email(email: str) -> bool:
    try:
        validate_email(email, check_deliverability=False)
    except EmailNotValidError:
        return False
    return True


def parse_recipients(text: str) -> Tuple[List[Tuple[str, str]], List[str]]:
    """
    Parse one `Name <email@domain.com>` per line.

    Returns (recipients, errors); blank lines are skipped and every bad line
    produces a `Line N: ...` message numbered among the non-blank lines.
    """
    recipients = []
    errors = []
    lines = [line.strip() for line in (text or "").splitlines() if line.strip()]
    for number, line in enumerate(lines, start=1):
        match = RECIPIENT_LINE.match(line)
        if not match:
            errors.append(f'Line {number}: Invalid format (should be "Name <email@domain.com>")')
            continue
        name, email = match.group(1).strip(), match.group(2).strip()
        if not is_valid_email(email):
            errors.append(f"Line {number}: Invalid email format")
            continue
        recipients.append((name, email))
    return recipients, errors


class LinkGenerator:
    def __init__(self, store: RecordStore, fallback: Optional[RecordStore] = None, tracking_enabled: bool = True):
        self.store = store
        self.fallback = fallback
        self.tracking_enabled = tracking_enabled
        self._last_stamp = 0
        self._stamp_lock = threading.Lock()

    def _next_stamp(self) -> int:
        with self._stamp_lock:
            stamp = max(int(time.time() * 1000), self._last_stamp + 1)
            self._last_stamp = stamp
            return stamp

    def generate_unique_id(self) -> str:
        """Millisecond timestamp plus a random tail, so ids sort roughly by creation time."""
        return (to_base36(self._next_stamp()) + random_base36(UNIQUE_ID_RANDOM_LENGTH)).upper()

    def build_url(self, base_url: str, token: str, unique_id: str, name: str, email: str) -> str:
        params = {"token": token}
        if self.tracking_enabled:
            params["id"] = unique_id
        params["name"] = name
        params["email"] = email
        return f"{base_url.rstrip('/')}/?{urlencode(params)}"

    def generate_confirmation_link(self, name: str, email: str, base_url: str) -> Link:
        token = generate_token()
        unique_id = self.generate_unique_id()
        link = Link(
            unique_id=unique_id,
            token=token,
            url=self.build_url(base_url, token, unique_id, name, email),
            name=name,
            email=email,
            created_at=utcnow_iso(),
        )
        self.register(link)
        return link

    def register(self, link: Link) -> bool:
        if self.store.add_link(link):
            return True
        if self.fallback is None:
            logger.error("Could not store link %s and no fallback store is configured", link.unique_id)
            return False
        logger.warning("Storing link %s in the fallback store", link.unique_id)
        return self.fallback.add_link(link)

    def generate_bulk(self, recipients: Iterable[Tuple[str, str]], base_url: str) -> List[Link]:
        return [self.generate_confirmation_link(name, email, base_url) for name, email in recipients]

    def all_links(self) -> List[Link]:
        links = self.store.get_links()
        if self.fallback is not None:
            links.extend(self.fallback.get_links())
        return links


def _confirmed_on(confirmation: Confirmation, day: date) -> bool:
    confirmed_at = parse_timestamp(confirmation.confirmed_at)
    return confirmed_at is not None and confirmed_at.date() == day


def link_stats(links: Sequence[Link], confirmations: Sequence[Confirmation], today: Optional[date] = None) -> dict:
    today = today or datetime.now(timezone.utc).date()
    clicks = sum(1 for link in links if link.clicked)
    confirmed = sum(1 for link in links if link.confirmed)
    conversion = math.floor(confirmed / clicks * 100 + 0.5) if clicks else 0
    return {
        "totalLinks": len(links),
        "totalClicks": clicks,
        "totalConfirmed": confirmed,
        "conversionRate": conversion,
        "totalConfirmations": len(confirmations),
        "todayConfirmations": sum(1 for c in confirmations if _confirmed_on(c, today)),
    }
