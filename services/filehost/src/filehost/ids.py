"""Short download identifiers.

Every symbol is the first letter of a T9 keypad key (2-9), so an ID can be
typed on a phone keypad with one press per letter. Two equal symbols in a
row would need a pause between presses, so they are never generated.
"""

import secrets
from typing import Container

ALPHABET = "adgjmptw"
ID_LENGTH = 6


def generate_id(live_ids: Container[str] = ()) -> str:
    while True:
        symbols: list[str] = []
        while len(symbols) < ID_LENGTH:
            symbol = secrets.choice(ALPHABET)
            if symbols and symbols[-1] == symbol:
                continue
            symbols.append(symbol)

        candidate = "".join(symbols)
        if candidate not in live_ids:
            return candidate


def is_valid_id(value: str) -> bool:
    return (
        len(value) == ID_LENGTH
        and all(c in ALPHABET for c in value)
        and all(a != b for a, b in zip(value, value[1:]))
    )
