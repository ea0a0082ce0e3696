"""
File handling utilities for certwarden.

This module provides functions for reading the JSON catalogs and snapshots
consumed by the audit and for safely writing results to files with
appropriate fallback mechanisms.
"""

import json
import os
import uuid
from typing import Any, Union

from certwarden.lib.errors import CatalogError, handle_error
from certwarden.lib.logger import logging

# Catalogs shipped with the package
DATA_PATH = os.path.join(os.path.dirname(os.path.dirname(__file__)), "data")


def data_file(name: str) -> str:
    return os.path.join(DATA_PATH, name)


def read_json_file(path: str) -> Any:
    """
    Read a JSON catalog or snapshot.

    Raises:
        CatalogError: If the file cannot be read or is not valid JSON
    """
    logging.debug(f"Reading {path!r}")

    try:
        with open(path, "r") as f:
            return json.load(f)
    except FileNotFoundError:
        raise CatalogError(f"File not found: {path}")
    except json.JSONDecodeError as e:
        raise CatalogError(f"Invalid JSON in {path}: {e}")
    except OSError as e:
        raise CatalogError(f"Could not read {path}: {e}")


def try_to_save_file(
    data: Union[bytes, str], output_path: str, abort_on_fail: bool = False
) -> str:
    """
    Try to write data to a file or stdout if file writing fails.

    If the file already exists, the user is prompted to confirm overwriting.

    Args:
        data: Data to write (either binary bytes or text string)
        output_path: Path to output file
        abort_on_fail: If True, abort the operation on failure

    Returns:
        The path written to, or "stdout"
    """
    logging.debug(f"Attempting to write data to {output_path!r}")

    # Clean up the output path
    output_path = output_path.replace("\\", "_").replace("/", "_").replace(":", "_")

    output_path = _handle_file_exists(output_path)

    try:
        mode = "wb" if isinstance(data, bytes) else "w"
        with open(output_path, mode) as f:
            f.write(data)
        logging.debug(f"Data written to {output_path!r}")
        return output_path
    except Exception as e:
        if abort_on_fail:
            logging.error(f"Error writing output file: {e}")
            raise
        logging.error(f"Error writing output file: {e}. Dumping to stdout instead")
        handle_error()
        print(data.decode() if isinstance(data, bytes) else data)
        return "stdout"


def _handle_file_exists(path: str) -> str:
    """
    Prompt before overwriting, or pick a unique filename.
    """
    if os.path.exists(path):
        overwrite = input(
            f"File {path!r} already exists. Overwrite? (y/n - saying no will save with a unique filename): "
        )
        if overwrite.strip().lower() != "y":
            base, ext = os.path.splitext(path)
            new_path = f"{base}_{uuid.uuid4()}{ext}"
            logging.debug(f"Using alternative filename: {new_path!r}")
            return new_path
    return path
