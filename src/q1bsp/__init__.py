"""Load Quake 1 (version 29) BSP files into a queryable structure.

The main entry point is :py:class:`q1bsp.bsp.BSP`. All memory used by a loaded map flows
through a pluggable :py:class:`~q1bsp.allocator.Allocator`, and a failed load never leaves
partially loaded data behind.
"""
from typing import Union
from typing_extensions import TypeAlias
import os as _os


__version__ = '1.0.0'

__all__ = [
    '__version__',
    'StringPath',
    'BSPError', 'BSPReadError', 'BSPFormatError', 'BSPAllocationError',
    'BSP', 'BSP_LUMPS', 'Allocator',

    # Submodules:
    'allocator', 'binformat', 'bsp', 'entities', 'logger', 'miptex',  # pyright: ignore
]

StringPath: TypeAlias = Union[str, '_os.PathLike[str]']


class BSPError(Exception):
    """Base class for all errors raised while loading a BSP file."""


class BSPReadError(BSPError, OSError):
    """Seeking in or reading from the source stream failed, or returned too few bytes."""


class BSPFormatError(BSPError, ValueError):
    """The file is not a version 29 BSP, or a structure inside it is truncated."""


class BSPAllocationError(BSPError, MemoryError):
    """The allocator could not provide a required buffer."""


# Not all classes are imported, just most-used ones.
from q1bsp.allocator import Allocator  # noqa: E402
from q1bsp.bsp import BSP, BSP_LUMPS  # noqa: E402
