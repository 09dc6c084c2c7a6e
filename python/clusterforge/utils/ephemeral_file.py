"""
clusterforge/utils/ephemeral_file.py

Provides an async context manager for ephemeral files: a private temporary
directory holding one file path, removed on exit whether or not the body raised.
Used for rendered chart values that must not outlive the install.
"""

import os
import shutil
import tempfile
from contextlib import asynccontextmanager
from typing import AsyncGenerator, Optional


@asynccontextmanager
async def ephemeral_manager(
    file_name: str,
    *,
    prefix: str = "ephemeral-",
    parent_dir: Optional[str] = None,
) -> AsyncGenerator[str, None]:
    """
    Yields a path `<tmpdir>/<file_name>` inside a fresh temporary directory.

    The caller is responsible for writing the file. Everything under the temporary
    directory is removed on exit.

    Args:
        file_name: Name of the file inside the ephemeral directory.
        prefix: Prefix for the ephemeral directory name.
        parent_dir: Where to create the directory. Defaults to the system temp dir.

    Yields:
        str: The ephemeral file path.

    Raises:
        ValueError: If file_name is empty or contains a path separator.
    """
    if not file_name or os.sep in file_name:
        raise ValueError(f"Invalid ephemeral file name: {file_name!r}")

    ephemeral_dir = tempfile.mkdtemp(dir=parent_dir, prefix=prefix)
    try:
        yield os.path.join(ephemeral_dir, file_name)
    finally:
        shutil.rmtree(ephemeral_dir, ignore_errors=True)
