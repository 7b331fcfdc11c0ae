"""Tokenisation helpers for keyword matching."""

from __future__ import annotations

import re
from typing import Dict, FrozenSet, Iterable, List

_TOKEN_RE = re.compile(r"\w+", re.UNICODE)

STOP_WORDS: Dict[str, FrozenSet[str]] = {
    "en": frozenset(
        """
        a about above after again against all am an and any are as at be because been
        before being below between both but by can could did do does doing down during
        each few for from further had has have having he her here hers herself him
        himself his how i if in into is it its itself just me more most my myself no
        nor not now of off on once only or other our ours ourselves out over own same
        she should so some such than that the their theirs them themselves then there
        these they this those through to too under until up very was we were what when
        where which while who whom why will with would you your yours yourself
        yourselves
        """.split()
    ),
    "it": frozenset(
        """
        a ad al alla alle agli ai anche avere che chi ci come con contro cui da dal
        dalla dalle dei del della delle dello di dove e ed era essere gli ha hanno ho
        i il in io la le lei li lo loro lui ma mi mio ne nei nel nella noi non o per
        perché più quale quando quanto quello questo se si sia sono su sua sue suo
        sul sulla tra tu un una uno voi
        """.split()
    ),
    "fr": frozenset(
        """
        au aux avec ce ces dans de des du elle en et eux il ils je la le les leur lui
        ma mais me même mes moi mon ne nos notre nous on ou par pas pour qu que qui sa
        se ses son sur ta te tes toi ton tu un une vos votre vous est sont
        """.split()
    ),
    "de": frozenset(
        """
        aber alle als am an auch auf aus bei bin bis da das dass dein dem den der des
        die doch du ein eine einem einen einer er es für hat ich ihr im in ist ja
        kein mit nach nicht noch nur oder sich sie sind so über um und uns von war
        was wie wir zu zum zur
        """.split()
    ),
    "es": frozenset(
        """
        a al algo como con de del el ella ellos en era es esta este hay la las le les
        lo los me mi más no nos o para pero por que se sin su sus te tu un una uno y
        ya yo
        """.split()
    ),
}


def stop_words_for(language: str | None) -> FrozenSet[str]:
    """Return the stop word set for a language name or code, English by default."""
    if not language:
        return STOP_WORDS["en"]
    code = language.strip().lower()[:2]
    return STOP_WORDS.get(code, STOP_WORDS["en"])


def tokenize(text: str, *, language: str | None = "en", keep_stop_words: bool = False) -> List[str]:
    """Lower-case word tokens with stop words removed."""
    stop_words = frozenset() if keep_stop_words else stop_words_for(language)
    return [
        token
        for token in (match.group(0).lower() for match in _TOKEN_RE.finditer(text))
        if len(token) > 1 and token not in stop_words
    ]


def effective_tolerance(token: str, tolerance: int) -> int:
    """Clamp fuzzy tolerance so very short tokens only match near-exactly."""
    return max(0, min(tolerance, (len(token) - 1) // 3))


def bounded_edit_distance(left: str, right: str, limit: int) -> int | None:
    """Levenshtein distance between two strings, or ``None`` when above ``limit``."""
    if abs(len(left) - len(right)) > limit:
        return None
    if left == right:
        return 0

    previous = list(range(len(right) + 1))
    for i, lch in enumerate(left, start=1):
        current = [i] + [0] * len(right)
        row_min = current[0]
        for j, rch in enumerate(right, start=1):
            cost = 0 if lch == rch else 1
            current[j] = min(previous[j] + 1, current[j - 1] + 1, previous[j - 1] + cost)
            row_min = min(row_min, current[j])
        if row_min > limit:
            return None
        previous = current

    distance = previous[-1]
    return distance if distance <= limit else None


def fuzzy_matches(token: str, vocabulary: Iterable[str], tolerance: int) -> Dict[str, int]:
    """Vocabulary terms within ``tolerance`` edits of ``token`` mapped to their distance."""
    limit = effective_tolerance(token, tolerance)
    matches: Dict[str, int] = {}
    for term in vocabulary:
        distance = bounded_edit_distance(token, term, limit)
        if distance is not None:
            matches[term] = distance
    return matches
