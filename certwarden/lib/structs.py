"""
Enum helpers with human-readable string representations.

Rights masks and template flags are decoded into these flag types so that
findings and debug traces print names ("WriteDacl, WriteOwner") instead of
raw integers.
"""

import enum
from typing import List

from certwarden.lib.formatting import to_pascal_case


class IntFlag(enum.IntFlag):
    """
    Enhanced IntFlag with smart string representation.
    """

    def to_list(self) -> List["IntFlag"]:
        """
        Decompose flag into list of individual flags.

        Returns:
            List of individual flag members
        """
        if not self._value_:
            return []

        return [
            flag
            for flag in self.__class__
            if flag.value and flag.value & self._value_ == flag.value
        ]

    def __str__(self) -> str:
        # Handle named values (composite values may carry a "A|B" name)
        if self.name is not None and "|" not in self.name:
            return to_pascal_case(self.name)

        # Handle empty flags
        if not self._value_:
            return ""

        flags = self.to_list()

        # If no decomposition was possible, return the raw value
        if not flags:
            return repr(self._value_)

        return ", ".join(
            to_pascal_case(flag.name) for flag in flags if flag.name is not None
        )

    def __repr__(self) -> str:
        return str(self)
