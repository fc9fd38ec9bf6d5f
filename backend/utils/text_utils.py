"""Text canonicalization and phonetic helpers for product matching.

Product keys are the comparison unit for the registry, the catalog and search
de-duplication. Phonetic forms are vowel-stripped words, enough to bridge brand
names that compress a common word ("element" -> "lmnt").
"""

import re

_NON_WORD_RE = re.compile(r"[^\w\s]")
_WHITESPACE_RE = re.compile(r"\s+")
_VOWEL_RE = re.compile(r"[aeiou]")

# Single-consonant phonetic forms ("d", "b") collide too easily to count as a match.
MIN_PHONETIC_LENGTH = 2


def normalize_product_key(text: str | None) -> str:
    """Lowercase, drop punctuation, collapse whitespace. Idempotent."""
    if not text:
        return ""
    lowered = str(text).lower()
    stripped = _NON_WORD_RE.sub("", lowered)
    return _WHITESPACE_RE.sub(" ", stripped).strip()


def phonetic_key(word: str) -> str:
    return _VOWEL_RE.sub("", (word or "").lower())


def phonetic_variants(query: str | None) -> list[str]:
    """Vowel-stripped variations of a query.

    One variant per word with only that word simplified, then (for multi-word
    queries) one with every word simplified. Variants equal to the query are skipped.
    """
    if not query:
        return []

    words = query.lower().split()
    base = " ".join(words)
    phonetic_words = [phonetic_key(word) for word in words]

    variants: list[str] = []
    for index, word in enumerate(words):
        simplified = phonetic_words[index]
        if not simplified or simplified == word:
            continue
        variation = list(words)
        variation[index] = simplified
        candidate = " ".join(variation)
        if candidate != base and candidate not in variants:
            variants.append(candidate)

    if len(words) > 1:
        all_phonetic = " ".join(p or w for p, w in zip(phonetic_words, words))
        if all_phonetic != base and all_phonetic not in variants:
            variants.append(all_phonetic)

    return variants


def are_phonetically_close(first: str | None, second: str | None) -> bool:
    consonants_a = phonetic_key(first or "")
    consonants_b = phonetic_key(second or "")
    if not consonants_a.strip() or not consonants_b.strip():
        return False
    return consonants_a in consonants_b or consonants_b in consonants_a


def _words_phonetically_equal(first: str, second: str) -> bool:
    key_a = phonetic_key(first)
    if len(key_a) < MIN_PHONETIC_LENGTH:
        return False
    return key_a == phonetic_key(second)


def detect_phonetic_transformation(user_input: str | None, classifier_output: str | None) -> bool:
    """True when the classifier swapped a word for a different spelling of the same sound."""
    input_words = normalize_product_key(user_input).split()
    output_words = normalize_product_key(classifier_output).split()
    for input_word in input_words:
        for output_word in output_words:
            if input_word != output_word and _words_phonetically_equal(input_word, output_word):
                return True
    return False


def fuzzy_key_match(input_key: str, candidate_key: str) -> bool:
    """Order-independent, substring-tolerant comparison of two product keys.

    Matches when either key contains the other, or when every word of the key with
    fewer words is found inside some word of the other key.
    """
    first = normalize_product_key(input_key)
    second = normalize_product_key(candidate_key)
    if not first or not second:
        return False
    if first in second or second in first:
        return True

    first_words = first.split()
    second_words = second.split()
    shorter, longer = (first_words, second_words) if len(first_words) <= len(second_words) else (second_words, first_words)

    for word in shorter:
        if not any(word in other for other in longer):
            return False
    return True
