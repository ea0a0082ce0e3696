"""
Formatting utilities for certwarden.

This module provides functions for formatting findings into human-readable
text, including pretty printing dictionaries and case conversion.
"""

import datetime
from typing import Any, Callable, Dict

# Type aliases for better readability
PrintFunc = Callable[..., Any]
JsonLike = Dict[str, Any]


def to_pascal_case(snake_str: str) -> str:
    """
    Convert a snake_case string to PascalCase.

    Example:
        >>> to_pascal_case("write_dacl")
        "WriteDacl"
    """
    components = snake_str.split("_")
    return "".join(x.title() for x in components)


REMAP = {
    "distinguished_name": "Distinguished Name",
    "identity_reference": "Identity Reference",
    "identity_sid": "Identity SID",
    "object_class": "Object Class",
    "enabled_on": "Enabled On",
    "member_count": "Member Count",
}


def pretty_print(
    data: JsonLike, indent: int = 0, padding: int = 40, print_func: PrintFunc = print
) -> None:
    """
    Pretty print a dictionary with customizable indentation and padding.

    Handles nested dictionaries, lists, and various data types with appropriate formatting.

    Args:
        data: Dictionary to print
        indent: Initial indentation level
        padding: Left padding for values
        print_func: Function to use for printing (default: built-in print)

    Raises:
        TypeError: If input is not a dictionary or contains unsupported types
    """
    indent_str = "  " * indent

    for key, value in data.items():
        if key in REMAP:
            key = REMAP[key]

        key_str = f"{indent_str}{key}"
        padded_key = key_str.ljust(padding, " ")

        if isinstance(value, (str, int, float, bool)):
            if isinstance(value, str) and "\n" in value:
                # Multi-line text (remediation scripts) is printed as a block
                print_func(f"{key_str}")
                for line in value.splitlines():
                    print_func(f"{indent_str}    {line}")
            else:
                print_func(f"{padded_key}: {value}")

        elif isinstance(value, datetime.datetime):
            print_func(f"{padded_key}: {value.isoformat()}")

        elif isinstance(value, dict):
            print_func(f"{key_str}")
            pretty_print(
                value, indent=indent + 1, padding=padding, print_func=print_func
            )

        elif isinstance(value, (list, tuple)):
            if len(value) > 0 and isinstance(value[0], dict):
                print_func(f"{key_str}")
                for item in value:
                    if isinstance(item, dict):
                        pretty_print(
                            item,
                            indent=indent + 1,
                            padding=padding,
                            print_func=print_func,
                        )
                    else:
                        print_func(f"{indent_str}  {item}")
            elif len(value) > 0:
                # Format list with line breaks if needed
                formatted_list = ("\n" + " " * padding + "  ").join(
                    str(x) for x in value
                )
                print_func(f"{padded_key}: {formatted_list}")

        elif value is None:
            # Skip None values
            continue

        else:
            raise TypeError(
                f"Unsupported type for pretty printing: {type(value).__name__}"
            )
