import errno
import os
import unittest

from tempfile import TemporaryDirectory
from unittest import mock

from atmfjstc.lib.scrap_packed.archive import ScrapPackedFile, EntryListing
from atmfjstc.lib.scrap_packed.codec import write_empty_container
from atmfjstc.lib.scrap_packed.entry import MAX_ENTRY_SIZE
from atmfjstc.lib.scrap_packed.errors import NotAScrapPackedFileError, PathNotFoundError, DuplicatePathError, \
    SizeLimitExceededError, PackedIOError, InvalidPackedPathError
from atmfjstc.lib.scrap_packed.targets import parse_target, folder_prefix, FileTarget, DirectoryTarget


def _write(path, data):
    os.makedirs(os.path.dirname(path), exist_ok=True)
    with open(path, 'wb') as f:
        f.write(data)


def _read(path):
    with open(path, 'rb') as f:
        return f.read()


def _u32(value):
    return value.to_bytes(4, 'little')


class _ArchiveTestBase(unittest.TestCase):
    def setUp(self):
        temp_dir = TemporaryDirectory()
        self.addCleanup(temp_dir.cleanup)

        self.dir = temp_dir.name
        self.archive_path = self._path('a.pak')

    def _path(self, *parts):
        return os.path.join(self.dir, *parts)

    def _make_file(self, name, data):
        path = self._path('src', *name.split('/'))
        _write(path, data)

        return path

    def _make_archive(self, contents):
        packed = ScrapPackedFile(self.archive_path)

        for name, data in contents.items():
            packed.add(self._make_file(name, data), name)

        packed.save()

        return packed

    def _paths(self, packed):
        return [listing.path for listing in packed.list_entries()]

    def _leftover_backups(self):
        return [
            os.path.join(dir_path, name)
            for dir_path, _, file_names in os.walk(self.dir)
            for name in file_names
            if name.endswith('.bak')
        ]


class OpenTest(_ArchiveTestBase):
    def test_creates_missing_archive(self):
        packed = ScrapPackedFile(self.archive_path)

        self.assertEqual(packed.version, 0)
        self.assertEqual(len(packed), 0)
        self.assertEqual(packed.file_name, self.archive_path)
        self.assertEqual(_read(self.archive_path), b'BFPK' + _u32(0) + _u32(0))

    def test_creates_parent_dirs(self):
        path = self._path('deep', 'er', 'new.packed')

        ScrapPackedFile(path)

        self.assertTrue(os.path.isfile(path))

    def test_bad_magic(self):
        _write(self.archive_path, b'PK\x03\x04 definitely a zip')

        with self.assertRaises(NotAScrapPackedFileError):
            ScrapPackedFile(self.archive_path)

    def test_reopen(self):
        self._make_archive({'a.txt': b'aaa', 'dir/b.txt': b'bb'})

        packed = ScrapPackedFile(self.archive_path)

        self.assertEqual(
            packed.list_entries(),
            (
                EntryListing(path='a.txt', size=3, offset=0, pending=False),
                EntryListing(path='dir/b.txt', size=2, offset=3, pending=False),
            )
        )


class ReadmeScenarioTest(_ArchiveTestBase):
    def test_add_save_extract(self):
        packed = ScrapPackedFile(self.archive_path)
        self.assertEqual(len(packed), 0)

        packed.add(self._make_file('readme.txt', b'hello'), 'readme.txt')

        self.assertEqual(
            packed.list_entries(), (EntryListing(path='readme.txt', size=5, offset=None, pending=True),)
        )

        packed.save()

        self.assertEqual(os.path.getsize(self.archive_path), 39)
        self.assertEqual(
            _read(self.archive_path),
            b'BFPK' + _u32(0) + _u32(1) + _u32(10) + b'readme.txt' + _u32(5) + _u32(0) + b'hello'
        )
        self.assertEqual(
            packed.list_entries(), (EntryListing(path='readme.txt', size=5, offset=0, pending=False),)
        )

        out_path = self._path('out', 'out.txt')
        packed.extract('readme.txt', out_path)

        self.assertEqual(_read(out_path), b'hello')


class AddTest(_ArchiveTestBase):
    def test_default_packed_path_is_base_name(self):
        packed = ScrapPackedFile(self.archive_path)
        packed.add(self._make_file('deep/name.txt', b'x'))

        self.assertEqual(self._paths(packed), ['name.txt'])

    def test_folder_packed_path(self):
        packed = ScrapPackedFile(self.archive_path)
        packed.add(self._make_file('name.txt', b'x'), 'texts/')

        self.assertEqual(self._paths(packed), ['texts/name.txt'])

    def test_replace_existing(self):
        packed = self._make_archive({'a.txt': b'old', 'b.txt': b'b'})

        new_path = self._path('elsewhere', 'new.txt')
        _write(new_path, b'brand new content')
        packed.add(new_path, 'a.txt')

        self.assertEqual(self._paths(packed), ['b.txt', 'a.txt'])
        self.assertEqual(packed.get_entry('a.txt').size, 17)
        self.assertTrue(packed.get_entry('a.txt').is_pending)

        packed.save()
        packed.extract('a.txt', self._path('out.txt'))

        self.assertEqual(_read(self._path('out.txt')), b'brand new content')

    def test_directory(self):
        source_dir = self._path('tree')
        _write(os.path.join(source_dir, 'b.txt'), b'b')
        _write(os.path.join(source_dir, 'a.txt'), b'a')
        _write(os.path.join(source_dir, 'sub', 'c.txt'), b'c')
        _write(os.path.join(source_dir, 'sub', 'deeper', 'd.txt'), b'd')

        packed = ScrapPackedFile(self.archive_path)
        packed.add(source_dir, 'data')

        self.assertEqual(
            self._paths(packed), ['data/a.txt', 'data/b.txt', 'data/sub/c.txt', 'data/sub/deeper/d.txt']
        )

    def test_directory_at_root(self):
        source_dir = self._path('tree')
        _write(os.path.join(source_dir, 'sub', 'c.txt'), b'c')

        for packed_path in ['', '/']:
            packed = ScrapPackedFile(self._path(f"root{len(packed_path)}.pak"))
            packed.add(source_dir, packed_path)

            self.assertEqual(self._paths(packed), ['sub/c.txt'])

    def test_missing_source(self):
        packed = ScrapPackedFile(self.archive_path)

        with self.assertRaises(FileNotFoundError):
            packed.add(self._path('nope.txt'), 'nope.txt')

    def test_size_limit(self):
        big_path = self._make_file('big.bin', b'not actually big')
        real_getsize = os.path.getsize

        def _fake_getsize(path):
            return MAX_ENTRY_SIZE + 1 if path.endswith('big.bin') else real_getsize(path)

        packed = ScrapPackedFile(self.archive_path)

        with mock.patch('os.path.getsize', side_effect=_fake_getsize):
            with self.assertRaises(SizeLimitExceededError):
                packed.add(big_path, 'big.bin')

        self.assertEqual(len(packed), 0)

    def test_size_limit_directory_is_all_or_nothing(self):
        self._make_file('a.txt', b'a')
        self._make_file('big.bin', b'b')
        real_getsize = os.path.getsize

        def _fake_getsize(path):
            return MAX_ENTRY_SIZE + 1 if path.endswith('big.bin') else real_getsize(path)

        packed = ScrapPackedFile(self.archive_path)

        with mock.patch('os.path.getsize', side_effect=_fake_getsize):
            with self.assertRaises(SizeLimitExceededError):
                packed.add(self._path('src'), '')

        self.assertEqual(len(packed), 0)

    def test_unencodable_name(self):
        packed = ScrapPackedFile(self.archive_path)

        with self.assertRaises(InvalidPackedPathError):
            packed.add(self._make_file('a.txt', b'a'), 'snow☃.txt')

    def test_unreadable_subdirectory(self):
        self._make_file('a.txt', b'a')
        self._make_file('locked/b.txt', b'b')
        real_scandir = os.scandir

        def _fake_scandir(path='.'):
            if os.fsdecode(path).endswith('locked'):
                raise PermissionError(errno.EACCES, 'Permission denied', path)

            return real_scandir(path)

        packed = ScrapPackedFile(self.archive_path)

        with mock.patch('os.scandir', side_effect=_fake_scandir):
            with self.assertRaises(PackedIOError):
                packed.add(self._path('src'), '')

        self.assertEqual(len(packed), 0)


class RenameTest(_ArchiveTestBase):
    def test_folder_scenario(self):
        packed = self._make_archive({'dir/a.txt': b'a', 'dir/b.txt': b'b', 'other.txt': b'o'})

        packed.rename('dir/', 'moved/')

        self.assertEqual(self._paths(packed), ['moved/a.txt', 'moved/b.txt', 'other.txt'])

    def test_file(self):
        packed = self._make_archive({'a.txt': b'a', 'b.txt': b'b'})

        packed.rename('a.txt', 'sub/z.txt')

        self.assertEqual(self._paths(packed), ['sub/z.txt', 'b.txt'])

        packed.save()
        packed.extract('sub/z.txt', self._path('z.txt'))

        self.assertEqual(_read(self._path('z.txt')), b'a')

    def test_root(self):
        packed = self._make_archive({'a.txt': b'a', 'dir/b.txt': b'b'})

        packed.rename('', 'all/')

        self.assertEqual(self._paths(packed), ['all/a.txt', 'all/dir/b.txt'])

    def test_plain_prefix_caveat(self):
        packed = self._make_archive({'dir1/x': b'1', 'dir10/x': b'2'})

        self.assertEqual([e.path for e in packed.folder_content('dir1')], ['dir1/x', 'dir10/x'])

        packed.rename('dir1/', 'renamed/')

        self.assertEqual(self._paths(packed), ['renamed/x', 'dir10/x'])

    def test_missing_file(self):
        packed = self._make_archive({'a.txt': b'a'})

        with self.assertRaises(PathNotFoundError):
            packed.rename('b.txt', 'c.txt')

    def test_missing_folder(self):
        packed = self._make_archive({'a.txt': b'a'})

        with self.assertRaises(PathNotFoundError):
            packed.rename('dir/', 'other/')

    def test_collision_changes_nothing(self):
        packed = self._make_archive({'dir/a.txt': b'a', 'dir/b.txt': b'b', 'other/b.txt': b'o'})

        with self.assertRaises(DuplicatePathError):
            packed.rename('dir/', 'other/')

        self.assertEqual(self._paths(packed), ['dir/a.txt', 'dir/b.txt', 'other/b.txt'])

    def test_invalid_new_name(self):
        packed = self._make_archive({'a.txt': b'a'})

        with self.assertRaises(InvalidPackedPathError):
            packed.rename('a.txt', '')


class RemoveTest(_ArchiveTestBase):
    def test_file(self):
        packed = self._make_archive({'a.txt': b'a', 'b.txt': b'b'})

        packed.remove('a.txt')

        self.assertEqual(self._paths(packed), ['b.txt'])

    def test_folder_affects_only_prefix(self):
        packed = self._make_archive({'dir/a': b'a', 'dir10/x': b'x', 'other': b'o', 'dir/sub/b': b'b'})

        packed.remove('dir/')

        self.assertEqual(self._paths(packed), ['dir10/x', 'other'])

    def test_missing(self):
        packed = self._make_archive({'a.txt': b'a'})

        with self.assertRaises(PathNotFoundError):
            packed.remove('b.txt')
        with self.assertRaises(PathNotFoundError):
            packed.remove('dir/')

    def test_root(self):
        packed = self._make_archive({'a.txt': b'a', 'dir/b.txt': b'b'})

        packed.remove('/')

        self.assertEqual(len(packed), 0)

    def test_save_after_remove(self):
        packed = self._make_archive({'a.txt': b'aaaa', 'b.txt': b'bb', 'c.txt': b'c'})

        packed.remove('a.txt')
        packed.save()

        reopened = ScrapPackedFile(self.archive_path)
        self.assertEqual([(e.path, e.offset) for e in reopened.list_entries()], [('b.txt', 0), ('c.txt', 2)])

        reopened.extract('', self._path('out') + os.sep)

        self.assertEqual(_read(self._path('out', 'b.txt')), b'bb')
        self.assertEqual(_read(self._path('out', 'c.txt')), b'c')


class ExtractTest(_ArchiveTestBase):
    def test_folder(self):
        packed = self._make_archive({'dir/a.txt': b'a', 'dir/sub/b.txt': b'b', 'other.txt': b'o'})

        packed.extract('dir/', self._path('out'))

        self.assertEqual(_read(self._path('out', 'a.txt')), b'a')
        self.assertEqual(_read(self._path('out', 'sub', 'b.txt')), b'b')
        self.assertFalse(os.path.exists(self._path('out', 'other.txt')))

    def test_into_existing_directory(self):
        packed = self._make_archive({'dir/a.txt': b'a'})
        os.makedirs(self._path('out'))

        packed.extract('dir/a.txt', self._path('out'))

        self.assertEqual(_read(self._path('out', 'a.txt')), b'a')

    def test_into_directory_by_trailing_separator(self):
        packed = self._make_archive({'dir/a.txt': b'a'})

        packed.extract('dir/a.txt', self._path('new_out') + os.sep)

        self.assertEqual(_read(self._path('new_out', 'a.txt')), b'a')

    def test_pending_entry(self):
        packed = ScrapPackedFile(self.archive_path)
        packed.add(self._make_file('a.txt', b'not saved yet'), 'a.txt')

        packed.extract('a.txt', self._path('out.txt'))

        self.assertEqual(_read(self._path('out.txt')), b'not saved yet')

    def test_overwrites_existing(self):
        packed = self._make_archive({'a.txt': b'new'})
        _write(self._path('out.txt'), b'old content')

        packed.extract('a.txt', self._path('out.txt'))

        self.assertEqual(_read(self._path('out.txt')), b'new')
        self.assertEqual(self._leftover_backups(), [])

    def test_missing(self):
        packed = self._make_archive({'a.txt': b'a'})

        with self.assertRaises(PathNotFoundError):
            packed.extract('b.txt', self._path('out.txt'))
        with self.assertRaises(PathNotFoundError):
            packed.extract('dir/', self._path('out'))

    def test_failure_restores_destination(self):
        packed = self._make_archive({'a.txt': b'new content'})
        out_path = self._path('out.txt')
        _write(out_path, b'precious original')

        def _disk_full(source, dest, n_bytes):
            dest.write(b'new')
            raise OSError(errno.ENOSPC, 'No space left on device')

        with mock.patch('atmfjstc.lib.scrap_packed.archive.copy_exact', side_effect=_disk_full):
            with self.assertRaises(PackedIOError):
                packed.extract('a.txt', out_path)

        self.assertEqual(_read(out_path), b'precious original')
        self.assertEqual(self._leftover_backups(), [])

    def test_failure_without_previous_file(self):
        packed = self._make_archive({'a.txt': b'new content'})
        out_path = self._path('out.txt')

        with mock.patch('atmfjstc.lib.scrap_packed.archive.copy_exact', side_effect=OSError(errno.ENOSPC, 'Full')):
            with self.assertRaises(PackedIOError):
                packed.extract('a.txt', out_path)

        self.assertFalse(os.path.exists(out_path))

    def test_unsafe_path(self):
        packed = self._make_archive({'x/a.txt': b'a'})
        packed.add(self._make_file('evil.txt', b'evil'), 'x/../../evil.txt')
        packed.save()

        with self.assertRaises(InvalidPackedPathError):
            packed.extract('x/', self._path('out'))

        self.assertFalse(os.path.exists(self._path('evil.txt')))


class SaveTest(_ArchiveTestBase):
    def test_in_place_keeps_packed_data(self):
        packed = self._make_archive({'a.txt': b'first', 'b.txt': b'second'})

        packed.add(self._make_file('c.txt', b'third'), 'c.txt')
        packed.remove('a.txt')
        packed.add(self._make_file('a.txt', b'first again'), 'a.txt')
        packed.save()

        self.assertEqual(self._leftover_backups(), [])

        reopened = ScrapPackedFile(self.archive_path)
        self.assertEqual(self._paths(reopened), ['b.txt', 'c.txt', 'a.txt'])

        for name, data in [('a.txt', b'first again'), ('b.txt', b'second'), ('c.txt', b'third')]:
            reopened.extract(name, self._path('out', name))
            self.assertEqual(_read(self._path('out', name)), data)

    def test_absorbs_external_entries(self):
        packed = ScrapPackedFile(self.archive_path)
        source = self._make_file('a.txt', b'data')
        packed.add(source, 'a.txt')
        packed.save()

        os.remove(source)

        self.assertFalse(packed.get_entry('a.txt').is_pending)

        packed.extract('a.txt', self._path('out.txt'))
        self.assertEqual(_read(self._path('out.txt')), b'data')

    def test_to_new_path(self):
        packed = self._make_archive({'a.txt': b'a'})
        original_bytes = _read(self.archive_path)

        packed.add(self._make_file('b.txt', b'b'), 'b.txt')
        new_path = self._path('copies', 'b.pak')
        packed.save(new_path)

        self.assertEqual(packed.file_name, new_path)
        self.assertEqual(_read(self.archive_path), original_bytes)
        self.assertEqual(self._paths(ScrapPackedFile(new_path)), ['a.txt', 'b.txt'])

    def test_over_existing_file(self):
        packed = self._make_archive({'a.txt': b'a'})
        other_path = self._path('other.pak')
        _write(other_path, b'whatever was here')

        packed.save(other_path)

        self.assertEqual(_read(other_path), _read(self.archive_path))
        self.assertEqual(self._leftover_backups(), [])

    def test_bytes_paths(self):
        self._make_archive({'a.txt': b'a'})

        packed = ScrapPackedFile(os.fsencode(self.archive_path))
        packed.add(os.fsencode(self._make_file('b.txt', b'b')), 'b.txt')
        packed.save()
        packed.extract('b.txt', os.fsencode(self._path('out.txt')))

        self.assertEqual(packed.file_name, self.archive_path)
        self.assertEqual(self._paths(ScrapPackedFile(self.archive_path)), ['a.txt', 'b.txt'])
        self.assertEqual(_read(self._path('out.txt')), b'b')
        self.assertEqual(self._leftover_backups(), [])

    def test_preserves_version(self):
        with open(self.archive_path, 'wb') as f:
            write_empty_container(f, version=3)

        packed = ScrapPackedFile(self.archive_path)
        packed.add(self._make_file('a.txt', b'a'), 'a.txt')
        packed.save()

        self.assertEqual(ScrapPackedFile(self.archive_path).version, 3)

    def test_failure_restores_archive(self):
        packed = self._make_archive({'a.txt': b'a', 'b.txt': b'b'})
        original_bytes = _read(self.archive_path)

        source = self._make_file('c.txt', b'c')
        packed.add(source, 'c.txt')
        os.remove(source)

        with self.assertRaises(PackedIOError):
            packed.save()

        self.assertEqual(_read(self.archive_path), original_bytes)
        self.assertEqual(self._leftover_backups(), [])
        self.assertTrue(packed.get_entry('c.txt').is_pending)

        # The archive is still usable after the failure
        packed.remove('c.txt')
        packed.save()
        packed.extract('b.txt', self._path('out.txt'))

        self.assertEqual(_read(self._path('out.txt')), b'b')

    def test_failure_on_new_path_leaves_nothing(self):
        packed = self._make_archive({'a.txt': b'a'})

        source = self._make_file('c.txt', b'c')
        packed.add(source, 'c.txt')
        os.remove(source)

        new_path = self._path('new.pak')
        with self.assertRaises(PackedIOError):
            packed.save(new_path)

        self.assertFalse(os.path.exists(new_path))
        self.assertEqual(packed.file_name, self.archive_path)

    def test_source_shrunk_since_add(self):
        packed = ScrapPackedFile(self.archive_path)
        source = self._make_file('a.txt', b'long content')
        packed.add(source, 'a.txt')
        _write(source, b'short')

        with self.assertRaises(PackedIOError):
            packed.save()

        self.assertEqual(_read(self.archive_path), b'BFPK' + _u32(0) + _u32(0))


class TargetsTest(unittest.TestCase):
    def test_parse(self):
        self.assertEqual(parse_target('a/b.txt'), FileTarget('a/b.txt'))
        self.assertEqual(parse_target('a/'), DirectoryTarget('a/'))
        self.assertEqual(parse_target(''), DirectoryTarget(''))
        self.assertEqual(parse_target('/'), DirectoryTarget(''))

    def test_relative_path(self):
        self.assertEqual(DirectoryTarget('a/').relative_path('a/b/c'), 'b/c')

    def test_folder_prefix(self):
        self.assertEqual(folder_prefix('data'), 'data/')
        self.assertEqual(folder_prefix('data//'), 'data/')
        self.assertEqual(folder_prefix('/'), '')
        self.assertEqual(folder_prefix(''), '')


if __name__ == '__main__':
    unittest.main()
