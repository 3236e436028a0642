from __future__ import annotations

from enum import Enum
from typing import Optional


class Lang(str, Enum):
    EN = "en"
    ES = "es"
    FR = "fr"
    DE = "de"

    @classmethod
    def parse(cls, code: Optional[str]) -> "Lang":
        """Map an ISO or BCP-47 code ("es", "es-ES", "fr_FR") to a Lang.

        Unsupported or empty codes fall back to English.
        """
        if isinstance(code, Lang):
            return code
        if not code:
            return cls.EN
        base = str(code).strip().lower().replace("_", "-").split("-", 1)[0]
        try:
            return cls(base)
        except ValueError:
            return cls.EN

    @property
    def bcp47(self) -> str:
        return _BCP47[self]


_BCP47 = {
    Lang.EN: "en-US",
    Lang.ES: "es-ES",
    Lang.FR: "fr-FR",
    Lang.DE: "de-DE",
}
