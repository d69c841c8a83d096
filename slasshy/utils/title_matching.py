import re
from typing import Set

# Similarity bands used when ranking catalog candidates
SIMILARITY_EXACT = 0.95
SIMILARITY_STRONG = 0.8
SIMILARITY_DECENT = 0.5
SIMILARITY_WEAK = 0.3

CONTAINMENT_BASE = 0.7
CONTAINMENT_WEIGHT = 0.3

_SEPARATORS_RE = re.compile(r'[-_.]')
_WHITESPACE_RE = re.compile(r'\s+')
_NON_ALNUM_RE = re.compile(r'[^\w\s]')
_LEADING_ARTICLE_RE = re.compile(r'^(?:the|a|an)\s+')


def normalize_for_store(title: str) -> str:
    """
    Normalization used when comparing series titles inside the catalog.
    'The Office' and 'office' compare equal; 'Law & Order' matches 'law and order'.
    """
    t = title.lower().replace('&', 'and')
    t = t.replace("'", '').replace(':', '')
    t = _SEPARATORS_RE.sub(' ', t)
    t = _WHITESPACE_RE.sub(' ', t).strip()
    if t.startswith('the '):
        t = t[4:]
    return t.strip()


def normalize_for_search(title: str) -> str:
    """Stronger normalization for scoring external catalog results."""
    t = title.lower().replace('&', 'and')
    t = t.replace("'", '').replace(':', '')
    t = _SEPARATORS_RE.sub(' ', t)
    t = _WHITESPACE_RE.sub(' ', t).strip()
    t = _LEADING_ARTICLE_RE.sub('', t)
    t = _NON_ALNUM_RE.sub('', t).replace('_', '')
    return _WHITESPACE_RE.sub(' ', t).strip()


def _words(title: str) -> Set[str]:
    return set(title.split())


def title_similarity(a: str, b: str) -> float:
    """
    Score in [0, 1]: 1.0 for equal normalized titles, containment scaled by
    length ratio, otherwise Jaccard similarity of the word sets.
    """
    n1 = normalize_for_search(a)
    n2 = normalize_for_search(b)

    if n1 == n2:
        return 1.0
    if not n1 or not n2:
        return 0.0

    if n1 in n2 or n2 in n1:
        shorter = min(len(n1), len(n2))
        longer = max(len(n1), len(n2))
        return CONTAINMENT_BASE + CONTAINMENT_WEIGHT * (shorter / longer)

    w1 = _words(n1)
    w2 = _words(n2)
    union = len(w1 | w2)
    if union == 0:
        return 0.0
    return len(w1 & w2) / union


def titles_are_similar(a: str, b: str) -> bool:
    """Loose check used by the catalog's fuzzy series lookup (inputs already normalized)."""
    if a == b:
        return True
    if a in b or b in a:
        return True

    w1 = _words(a)
    w2 = _words(b)
    common = len(w1 & w2)
    smaller = min(len(w1), len(w2))
    return smaller > 0 and common >= smaller - 1


def first_word(title: str) -> str:
    parts = title.split()
    return parts[0] if parts else ''
