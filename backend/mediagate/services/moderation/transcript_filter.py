"""
Transcript screening for the audio modality.

Terms match on word boundaries only (apostrophes count as word characters,
so "don't" never yields "don"), multi-word terms tolerate any run of
whitespace, and a match that lies entirely inside an allow-listed benign
phrase is ignored. Plain substring containment never matches.
"""
from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import List, Optional, Pattern, Sequence, Tuple

DENYLIST: Tuple[str, ...] = (
    # Profanity
    "fuck", "fucking", "shit", "bitch", "asshole", "bastard", "cunt", "dickhead",
    # Hate speech
    "nigger", "faggot", "retard", "spic", "chink", "kike", "wetback",
    # Violence
    "kill yourself", "die bitch", "murder", "terrorist", "bomb threat", "school shooter",
    # Bullying
    "ugly bitch", "nobody likes you", "worthless",
    # Hostile proselytising
    "burn in hell", "god hates", "convert or die",
)

# Benign phrases that contain, or sound like, a denylisted term
ALLOWLIST: Tuple[str, ...] = (
    "boo boo",
    "hello there",
    "murder mystery",
    "murder of crows",
)

TOPIC_KEYWORDS: Tuple[str, ...] = (
    "coffee", "tea", "cooking", "baking", "recipe", "food", "restaurant",
    "fitness", "workout", "gym", "yoga", "running", "travel", "vacation",
    "adventure", "shopping", "fashion", "makeup", "beach", "ocean", "sunset",
    "mountain", "hiking", "camping", "forest", "nature", "fishing", "garden",
    "city", "downtown", "architecture", "concert", "festival", "party",
    "football", "soccer", "basketball", "baseball", "tennis", "golf",
    "swimming", "cycling", "skateboarding", "surfing", "skiing", "game",
    "technology", "computer", "smartphone", "software", "artificial intelligence",
    "robot", "startup", "business", "art", "painting", "museum", "music",
    "song", "dance", "movie", "book", "reading", "school", "university",
    "tutorial",
)

# Inflections folded onto their topic keyword
STEMS: Tuple[Tuple[str, str], ...] = (
    (r"fish(?:ing|ed)?", "fishing"),
    (r"cook(?:ing|ed)?", "cooking"),
    (r"travel(?:ing|led|ed)?", "travel"),
    (r"hik(?:e|ing|ed)", "hiking"),
    (r"swim(?:ming)?|swam", "swimming"),
    (r"gam(?:e|es|ing)", "game"),
)


def term_pattern(term: str) -> Pattern[str]:
    body = r"\s+".join(re.escape(word) for word in term.lower().split())
    return re.compile(rf"(?<![\w']){body}(?![\w'])")


@dataclass
class TranscriptScan:
    matches: List[str] = field(default_factory=list)
    keywords: List[str] = field(default_factory=list)

    @property
    def flagged(self) -> bool:
        return bool(self.matches)


class TranscriptFilter:
    def __init__(
        self,
        denylist: Sequence[str] = DENYLIST,
        allowlist: Sequence[str] = ALLOWLIST,
        topics: Sequence[str] = TOPIC_KEYWORDS,
    ):
        self._deny = [(t, term_pattern(t)) for t in dict.fromkeys(denylist)]
        self._allow = [term_pattern(p) for p in allowlist]
        self._topics = [(t, term_pattern(t)) for t in topics]
        self._stems = [(kw, re.compile(rf"(?<![\w'])(?:{rx})(?![\w'])")) for rx, kw in STEMS]

    def _allowed_spans(self, text: str) -> List[Tuple[int, int]]:
        return [m.span() for pat in self._allow for m in pat.finditer(text)]

    def find_matches(self, transcript: Optional[str]) -> List[str]:
        if not transcript or not transcript.strip():
            return []
        text = transcript.lower()
        spans = self._allowed_spans(text)
        found = []
        for term, pat in self._deny:
            for m in pat.finditer(text):
                if not any(a <= m.start() and m.end() <= b for a, b in spans):
                    found.append(term)
                    break
        return found

    def extract_keywords(self, transcript: Optional[str]) -> List[str]:
        if not transcript:
            return []
        text = transcript.lower()
        found = [t for t, pat in self._topics if pat.search(text)]
        for kw, pat in self._stems:
            if kw not in found and pat.search(text):
                found.append(kw)
        return found

    def scan(self, transcript: Optional[str]) -> TranscriptScan:
        return TranscriptScan(
            matches=self.find_matches(transcript),
            keywords=self.extract_keywords(transcript),
        )


transcript_filter = TranscriptFilter()

