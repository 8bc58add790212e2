"""
String similarity primitives used by duplicate detection.

All scores are in ``[0, 1]`` where 1 means identical under the chosen comparison.
"""

import re
from typing import List

from app.domain.imports.models import MatchType

_NON_LETTERS = re.compile(r"[^A-Z]")
_NON_ALNUM = re.compile(r"[^a-z0-9]", re.IGNORECASE)

SOUNDEX_CODES = {
    **dict.fromkeys("BFPV", "1"),
    **dict.fromkeys("CGJKQSXZ", "2"),
    **dict.fromkeys("DT", "3"),
    "L": "4",
    **dict.fromkeys("MN", "5"),
    "R": "6",
}
SOUNDEX_LENGTH = 4


def levenshtein_distance(s1: str, s2: str) -> int:
    """Edit distance (insert, delete, substitute) using the full DP matrix."""
    m, n = len(s1), len(s2)
    dp: List[List[int]] = [[0] * (n + 1) for _ in range(m + 1)]
    for i in range(m + 1):
        dp[i][0] = i
    for j in range(n + 1):
        dp[0][j] = j

    for i in range(1, m + 1):
        for j in range(1, n + 1):
            if s1[i - 1] == s2[j - 1]:
                dp[i][j] = dp[i - 1][j - 1]
            else:
                dp[i][j] = 1 + min(dp[i - 1][j], dp[i][j - 1], dp[i - 1][j - 1])

    return dp[m][n]


def fuzzy_score(s1: str, s2: str) -> float:
    if s1 == s2:
        return 1.0
    if not s1 or not s2:
        return 0.0
    return 1 - levenshtein_distance(s1, s2) / max(len(s1), len(s2))


def soundex(value: str) -> str:
    """
    Four-character Soundex code: first letter plus up to three digits.

    Adjacent letters with the same code collapse to one digit; a letter without
    a code (vowels, H, W, Y) separates runs. Input without letters is ``"0000"``.
    """
    letters = _NON_LETTERS.sub("", value.upper())
    if not letters:
        return "0" * SOUNDEX_LENGTH

    result = letters[0]
    previous = SOUNDEX_CODES.get(letters[0], "")

    for char in letters[1:]:
        if len(result) >= SOUNDEX_LENGTH:
            break
        code = SOUNDEX_CODES.get(char)
        if code and code != previous:
            result += code
            previous = code
        elif not code:
            previous = ""

    return (result + "0" * SOUNDEX_LENGTH)[:SOUNDEX_LENGTH]


def phonetic_score(s1: str, s2: str) -> float:
    code1, code2 = soundex(s1), soundex(s2)
    if code1 == code2:
        return 1.0
    same_positions = sum(1 for a, b in zip(code1, code2) if a == b)
    return same_positions / SOUNDEX_LENGTH


def field_match_score(value1: str, value2: str, match_type: MatchType, case_sensitive: bool = False) -> float:
    v1 = value1 if case_sensitive else value1.lower()
    v2 = value2 if case_sensitive else value2.lower()

    if match_type == MatchType.NORMALIZED:
        return 1.0 if _NON_ALNUM.sub("", v1) == _NON_ALNUM.sub("", v2) else 0.0
    if match_type == MatchType.FUZZY:
        return fuzzy_score(v1, v2)
    if match_type == MatchType.PHONETIC:
        return phonetic_score(v1, v2)
    return 1.0 if v1 == v2 else 0.0
