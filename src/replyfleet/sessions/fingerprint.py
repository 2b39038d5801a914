"""Fingerprint generator — realistic, unique client signatures per session."""

from __future__ import annotations

import hashlib
import random
from dataclasses import asdict, dataclass

from replyfleet.db.models import Fingerprint

MAX_ATTEMPTS = 100


@dataclass(frozen=True)
class FingerprintProfile:
    name: str
    user_agents: tuple[str, ...]
    platform: str
    viewports: tuple[tuple[int, int], ...]
    hardware_concurrency: tuple[int, ...]
    device_memory: tuple[int, ...]
    timezones: tuple[str, ...]
    locales: tuple[str, ...] = ("en-US",)


_CHROME = "AppleWebKit/537.36 (KHTML, like Gecko) Chrome/{v}.0.0.0 Safari/537.36"

WINDOWS_CHROME = FingerprintProfile(
    name="windows-chrome",
    user_agents=tuple(
        f"Mozilla/5.0 (Windows NT 10.0; Win64; x64) {_CHROME.format(v=v)}"
        for v in (118, 119, 120, 121)
    ),
    platform="Win32",
    viewports=((1920, 1080), (2560, 1440), (1366, 768), (1536, 864), (1440, 900)),
    hardware_concurrency=(4, 6, 8, 12, 16),
    device_memory=(4, 8, 16, 32),
    timezones=(
        "America/New_York",
        "America/Chicago",
        "America/Denver",
        "America/Los_Angeles",
        "Europe/London",
    ),
)

MACOS_CHROME = FingerprintProfile(
    name="macos-chrome",
    user_agents=(
        f"Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) {_CHROME.format(v=120)}",
        f"Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) {_CHROME.format(v=119)}",
        f"Mozilla/5.0 (Macintosh; Intel Mac OS X 14_0) {_CHROME.format(v=120)}",
    ),
    platform="MacIntel",
    viewports=((2560, 1600), (1920, 1080), (2880, 1800), (1440, 900)),
    hardware_concurrency=(8, 10, 12),
    device_memory=(8, 16, 32),
    timezones=("America/New_York", "America/Los_Angeles", "America/Chicago"),
)

LINUX_CHROME = FingerprintProfile(
    name="linux-chrome",
    user_agents=(
        f"Mozilla/5.0 (X11; Linux x86_64) {_CHROME.format(v=120)}",
        f"Mozilla/5.0 (X11; Linux x86_64) {_CHROME.format(v=119)}",
    ),
    platform="Linux x86_64",
    viewports=((1920, 1080), (2560, 1440), (1366, 768)),
    hardware_concurrency=(4, 8, 12, 16),
    device_memory=(8, 16, 32),
    timezones=("America/New_York", "Europe/London", "UTC"),
)

PROFILES = (WINDOWS_CHROME, MACOS_CHROME, LINUX_CHROME)


def fingerprint_hash(fp: Fingerprint) -> str:
    raw = "|".join(str(v) for v in asdict(fp).values())
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()[:16]


class FingerprintGenerator:
    """Hand out fingerprints that no other live session is using."""

    def __init__(self, rng: random.Random | None = None) -> None:
        self.rng = rng or random.Random()
        self._used: set[str] = set()

    def generate(self) -> Fingerprint:
        """Generate a fingerprint, retrying until it is unique.

        Returns:
            A new Fingerprint, already marked as used.
        """
        fp = self.from_profile(self.rng.choice(PROFILES))
        for _ in range(MAX_ATTEMPTS - 1):
            if fingerprint_hash(fp) not in self._used:
                break
            fp = self.from_profile(self.rng.choice(PROFILES))
        self.mark_used(fp)
        return fp

    def from_profile(self, profile: FingerprintProfile) -> Fingerprint:
        return Fingerprint(
            user_agent=self.rng.choice(profile.user_agents),
            platform=profile.platform,
            viewport=self.rng.choice(profile.viewports),
            locale=self.rng.choice(profile.locales),
            timezone=self.rng.choice(profile.timezones),
            hardware_concurrency=self.rng.choice(profile.hardware_concurrency),
            device_memory=self.rng.choice(profile.device_memory),
        )

    def mark_used(self, fp: Fingerprint) -> None:
        self._used.add(fingerprint_hash(fp))

    def release(self, fp: Fingerprint) -> None:
        self._used.discard(fingerprint_hash(fp))

    def is_used(self, fp: Fingerprint) -> bool:
        return fingerprint_hash(fp) in self._used
