from . import audit

ENTRY_PARSERS = [
    audit,
]
