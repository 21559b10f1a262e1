"""The Suras reference table and its cassette lists."""

from __future__ import annotations

import logging
import re

from cassette_tracker.errors import ValidationError
from cassette_tracker.models import SuraRow, UserAccount
from cassette_tracker.services.gateway import PersistenceGateway

logger = logging.getLogger(__name__)

SURA_NAMES = (
    "Al-Fatihah", "Al-Baqarah", "Al-Imran", "An-Nisa", "Al-Ma'idah",
    "Al-An'am", "Al-A'raf", "Al-Anfal", "At-Tawbah", "Yunus",
    "Hud", "Yusuf", "Ar-Ra'd", "Ibrahim", "Al-Hijr",
    "An-Nahl", "Al-Isra", "Al-Kahf", "Maryam", "Ta-Ha",
    "Al-Anbiya", "Al-Hajj", "Al-Mu'minun", "An-Nur", "Al-Furqan",
    "Ash-Shu'ara", "An-Naml", "Al-Qasas", "Al-Ankabut", "Ar-Rum",
    "Luqman", "As-Sajdah", "Al-Ahzab", "Saba", "Fatir",
    "Ya-Sin", "As-Saffat", "Sad", "Az-Zumar", "Ghafir",
    "Fussilat", "Ash-Shura", "Az-Zukhruf", "Ad-Dukhan", "Al-Jathiyah",
    "Al-Ahqaf", "Muhammad", "Al-Fath", "Al-Hujurat", "Qaf",
    "Adh-Dhariyat", "At-Tur", "An-Najm", "Al-Qamar", "Ar-Rahman",
    "Al-Waqi'ah", "Al-Hadid", "Al-Mujadilah", "Al-Hashr", "Al-Mumtahanah",
    "As-Saff", "Al-Jumu'ah", "Al-Munafiqun", "At-Taghabun", "At-Talaq",
    "At-Tahrim", "Al-Mulk", "Al-Qalam", "Al-Haqqah", "Al-Ma'arij",
    "Nuh", "Al-Jinn", "Al-Muzzammil", "Al-Muddaththir", "Al-Qiyamah",
    "Al-Insan", "Al-Mursalat", "An-Naba", "An-Nazi'at", "Abasa",
    "At-Takwir", "Al-Infitar", "Al-Mutaffifin", "Al-Inshiqaq", "Al-Buruj",
    "At-Tariq", "Al-A'la", "Al-Ghashiyah", "Al-Fajr", "Al-Balad",
    "Ash-Shams", "Al-Layl", "Ad-Duha", "Ash-Sharh", "At-Tin",
    "Al-Alaq", "Al-Qadr", "Al-Bayyinah", "Az-Zalzalah", "Al-Adiyat",
    "Al-Qari'ah", "At-Takathur", "Al-Asr", "Al-Humazah", "Al-Fil",
    "Quraysh", "Al-Ma'un", "Al-Kawthar", "Al-Kafirun", "An-Nasr",
    "Al-Masad", "Al-Ikhlas", "Al-Falaq", "An-Nas",
)


def seed_rows() -> list[tuple[int, str]]:
    return list(enumerate(SURA_NAMES, start=1))


def parse_cassette_numbers(raw: str | None) -> list[int]:
    """Parse "3, 5,7" into [3, 5, 7]. Blank input yields an empty list."""

    if raw is None or not raw.strip():
        return []
    numbers: list[int] = []
    for part in raw.split(","):
        part = part.strip()
        if not part:
            continue
        if not re.fullmatch(r"\d+", part):
            raise ValidationError(
                f"Cassette list must be comma-separated whole numbers, got {part!r}."
            )
        numbers.append(int(part))
    return numbers


def normalize_cassette_count(raw: object) -> str | None:
    """Validate user input and return the stored form, or None when cleared."""

    if raw is None:
        return None
    if isinstance(raw, bool) or not isinstance(raw, (str, int)):
        raise ValidationError("Cassette list must be text.")
    numbers = parse_cassette_numbers(str(raw))
    if not numbers:
        return None
    return ", ".join(str(number) for number in numbers)


def total_cassettes(rows: list[SuraRow]) -> int:
    """Count distinct cassette numbers referenced across all suras."""

    seen: set[int] = set()
    for row in rows:
        try:
            seen.update(parse_cassette_numbers(row.cassette_count))
        except ValidationError:
            logger.warning(
                "Skipping unparseable cassette list",
                extra={"event": "sura_cassettes_unparseable", "context": {"sura": row.number}},
            )
    return len(seen)


class SuraTable:
    def __init__(self, gateway: PersistenceGateway) -> None:
        self.gateway = gateway

    def list(self) -> list[SuraRow]:
        return self.gateway.list_suras()

    def update(self, actor: UserAccount, number: int, raw: object) -> SuraRow | None:
        cassette_count = normalize_cassette_count(raw)
        sura = self.gateway.update_sura(number, cassette_count, actor.email)
        if sura:
            logger.info(
                "Sura cassettes updated",
                extra={
                    "event": "sura_updated",
                    "context": {"sura": number, "cassette_count": cassette_count},
                },
            )
        return sura
