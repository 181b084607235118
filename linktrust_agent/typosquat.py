"""
Typosquatting detection against a fixed brand list.

A candidate's second-level label is compared with each brand in order:
pattern substitution, normalized edit-distance similarity, character
confusion density and Latin/Cyrillic homoglyphs. The first brand that
matches is returned.

The similarity thresholds are empirically chosen and exposed through
TyposquatThresholds so they can be calibrated against labeled data.
"""
from __future__ import annotations

from dataclasses import dataclass

from .urls import second_level_label


KNOWN_BRANDS: tuple[str, ...] = (
    # Tech
    "google", "microsoft", "apple", "amazon", "facebook", "meta",
    "twitter", "x", "instagram", "linkedin", "youtube", "tiktok",
    "github", "gitlab", "bitbucket", "stackoverflow", "reddit",
    "netflix", "spotify", "twitch", "discord", "telegram",
    # E-commerce and finance
    "paypal", "stripe", "shopify", "ebay", "etsy", "alibaba",
    "visa", "mastercard", "americanexpress", "chase", "bankofamerica",
    # Cloud and services
    "aws", "azure", "dropbox", "onedrive", "icloud", "gmail",
    "outlook", "hotmail", "yahoo",
    # Software
    "adobe", "autodesk", "oracle", "salesforce", "zoom", "slack",
    "office", "teams",
    # News and media
    "bbc", "cnn", "reuters", "nytimes", "washingtonpost", "theguardian",
    "wikipedia", "wikimedia",
    # Education
    "coursera", "edx", "udemy", "khanacademy",
    # Words phishers lean on
    "bank", "secure", "verify", "update", "account", "login", "confirm",
)

# (from, to): replacing `from` in the candidate with `to` may reveal the brand.
SUBSTITUTION_PATTERNS: tuple[tuple[str, str], ...] = (
    ("rn", "m"),
    ("ci", "gi"),
    ("tu", "you"),
    ("vv", "w"),
    ("cl", "d"),
    ("0", "o"),
    ("1", "i"),
    ("5", "s"),
)

# Glyphs readers confuse at a glance. Checked in both directions.
CHARACTER_CONFUSIONS: dict[str, tuple[str, ...]] = {
    "m": ("rn", "nn", "w"),
    "n": ("m", "h", "u"),
    "r": ("n", "p"),
    "g": ("q", "9", "6"),
    "o": ("0", "q", "d"),
    "i": ("l", "1", "j"),
    "l": ("i", "1", "t"),
    "t": ("f", "l", "y"),
    "y": ("v", "t"),
    "v": ("y", "u"),
    "u": ("v", "n"),
    "c": ("e", "o", "g"),
    "e": ("c", "o"),
    "a": ("o", "e"),
    "s": ("5", "z"),
    "z": ("s", "2"),
    "0": ("o",),
    "1": ("i", "l"),
    "5": ("s",),
    "6": ("g",),
    "9": ("g", "q"),
}

# Latin letter -> Cyrillic look-alike.
HOMOGLYPHS: dict[str, tuple[str, ...]] = {
    "a": ("а",),
    "e": ("е",),
    "o": ("о",),
    "p": ("р",),
    "c": ("с",),
    "x": ("х",),
    "y": ("у",),
    "m": ("м",),
    "h": ("н",),
}

MAX_LENGTH_DIFF = 3
CONFUSION_DENSITY = 0.3


@dataclass(frozen=True)
class TyposquatThresholds:
    pattern_min: float = 0.9
    strong_min: float = 0.75
    weak_min: float = 0.65


def levenshtein_distance(a: str, b: str) -> int:
    if a == b:
        return 0
    if not a:
        return len(b)
    if not b:
        return len(a)

    previous = list(range(len(b) + 1))
    for i, ca in enumerate(a, start=1):
        current = [i]
        for j, cb in enumerate(b, start=1):
            cost = 0 if ca == cb else 1
            current.append(min(previous[j - 1] + cost, previous[j] + 1, current[j - 1] + 1))
        previous = current
    return previous[-1]


def similarity(a: str, b: str) -> float:
    """(maxLen - editDistance) / maxLen, 1.0 for two empty strings."""
    longest = max(len(a), len(b))
    if longest == 0:
        return 1.0
    return (longest - levenshtein_distance(a, b)) / longest


def has_character_confusions(a: str, b: str) -> bool:
    if len(a) != len(b) or not a:
        return False

    confusions = 0
    for ca, cb in zip(a, b):
        if ca == cb:
            continue
        if cb in CHARACTER_CONFUSIONS.get(ca, ()) or ca in CHARACTER_CONFUSIONS.get(cb, ()):
            confusions += 1
    return confusions > len(a) * CONFUSION_DENSITY


def has_homoglyphs(a: str, b: str) -> bool:
    if len(a) != len(b):
        return False

    for ca, cb in zip(a, b):
        if ca == cb:
            continue
        if cb in HOMOGLYPHS.get(ca.lower(), ()) or ca in HOMOGLYPHS.get(cb.lower(), ()):
            return True
    return False


class TyposquatDetector:
    def __init__(
        self,
        thresholds: TyposquatThresholds | None = None,
        brands: tuple[str, ...] = KNOWN_BRANDS,
    ) -> None:
        self.thresholds = thresholds or TyposquatThresholds()
        self.brands = tuple(b.lower() for b in brands)

    def matches_pattern(self, label: str, brand: str) -> bool:
        # "toutube" -> "youtube": a leading t standing in for "you".
        if label.startswith("t") and brand.startswith("you") and label[1:] == brand[3:]:
            return True

        if brand == "youtube" and label.endswith("tube") and 5 <= len(label) <= 8:
            if similarity(label, brand) > 0.7:
                return True

        for source, replacement in SUBSTITUTION_PATTERNS:
            if source in label and replacement in brand:
                candidate = label.replace(source, replacement, 1)
                if candidate == brand or similarity(candidate, brand) >= self.thresholds.pattern_min:
                    return True
        return False

    def matches_brand(self, label: str, brand: str) -> bool:
        if label == brand:
            return False
        if abs(len(label) - len(brand)) > MAX_LENGTH_DIFF:
            return False

        if self.matches_pattern(label, brand):
            return True

        score = similarity(label, brand)
        if score > self.thresholds.strong_min and score < 1.0:
            return True
        if self.thresholds.weak_min < score <= self.thresholds.strong_min:
            if has_character_confusions(label, brand):
                return True

        return has_homoglyphs(label, brand)

    def detect(self, domain: str) -> str | None:
        label = second_level_label(domain)
        if not label:
            return None
        for brand in self.brands:
            if self.matches_brand(label, brand):
                return brand
        return None


_default_detector = TyposquatDetector()


def detect(domain: str) -> str | None:
    return _default_detector.detect(domain)
