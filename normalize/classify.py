from __future__ import annotations


CAUSES: tuple[str, ...] = (
    "climate",
    "reproductive",
    "immigration",
    "racial_justice",
    "lgbtq",
    "labor",
    "political",
    "other",
)

PROTEST_KEYWORDS: tuple[str, ...] = (
    "rally",
    "demonstration",
    "protest",
    "march",
    "vigil",
    "strike",
    "climate",
    "abortion",
    "immigration",
    "rights",
    "justice",
    "action",
    "solidarity",
    "occupy",
    "resist",
    "movement",
    "activist",
)

# Checked top to bottom; the first cause with any hit wins, not the best match.
CAUSE_KEYWORDS: tuple[tuple[str, tuple[str, ...]], ...] = (
    ("climate", ("climate", "environment", "earth day", "green")),
    ("reproductive", ("abortion", "reproductive", "planned parenthood", "roe")),
    ("immigration", ("immigration", "ice", "border", "refugee", "daca")),
    ("racial_justice", ("blm", "black lives", "racial", "police", "justice")),
    ("lgbtq", ("pride", "lgbtq", "gay", "trans", "gender")),
    ("labor", ("union", "worker", "strike", "labor", "wage")),
    ("political", ("election", "vote", "democrat", "republican", "trump", "biden")),
)


def _joined(*parts: str | None) -> str:
    return " ".join(p for p in parts if p).casefold()


def is_protest_event(*texts: str | None) -> bool:
    text = _joined(*texts)
    return any(keyword in text for keyword in PROTEST_KEYWORDS)


def categorize_event(*texts: str | None) -> str:
    text = _joined(*texts)
    for cause, keywords in CAUSE_KEYWORDS:
        if any(keyword in text for keyword in keywords):
            return cause
    return "other"


def coerce_cause(value: str | None, *texts: str | None) -> str:
    """Keep a caller-supplied cause when valid, otherwise classify the text."""
    if value is not None and value in CAUSES:
        return value
    return categorize_event(*texts)
