"""
Engine for reading and editing the "packed" archives used by the game Scrapland (files with the ``BFPK`` signature).

A packed archive is a flat container: a header, an index of entries (path, size, offset), then the data of all the
entries, concatenated. There is no compression or encryption.

The main class of interest is `ScrapPackedFile`, in the `archive` module. Opening a file that does not exist creates
a new, empty archive::

    packed = ScrapPackedFile('data.packed')

The archive can then be edited in memory::

    packed.add('path/to/models', 'models/')
    packed.rename('models/old.3d', 'models/new.3d')
    packed.remove('sounds/')

and the changes written out with::

    packed.save()

Entries can be extracted at any time with `ScrapPackedFile.extract`. Files that are overwritten, either by extraction
or by saving, are backed up first and restored if the write fails (see the `guard` module).

Paths inside the archive use ``/`` as a separator. A path ending in ``/`` (or the empty path, for the root) designates
a folder, i.e. all the entries whose path starts with it.
"""

from typing import AnyStr, Union
from os import PathLike


__version__ = '1.0.0'


PathType = Union[PathLike, AnyStr]
