#!/usr/bin/env python3
"""
oberonfs.py - Oberon Diskette Image Reader

Decodes the filesystem of a 720K Oberon workstation diskette straight from
a raw sector image. The geometry is fixed; nothing on the disk describes it.

Layout (512-byte blocks):
- Block 0: boot sector, media descriptor at offset 21
- Blocks 1-3: allocation table, pairs of signed 12-bit links per 3 bytes
- Blocks 7-13: directory, volume label in block 7 slot 0
- Block 10+: data area, 2-block (1024-byte) allocation units

This module is read-only and never prints; see cft.py for the front end.
"""

import struct
import time

# =============================================================================
# Constants
# =============================================================================

BLOCK_SIZE = 512
FAT_ENTRIES = 720
FAT_START_BLOCK = 1
FAT_BLOCKS = 3
DIR_START_BLOCK = 7
DIR_END_BLOCK = 14
DATA_START_BLOCK = 10
UNIT_BLOCKS = 2
UNIT_SIZE = UNIT_BLOCKS * BLOCK_SIZE

DIR_ENTRY_SIZE = 32
DIR_ENTRIES_PER_BLOCK = BLOCK_SIZE // DIR_ENTRY_SIZE
MAX_NAME_LEN = 22

MEDIA_DESCRIPTOR_OFFSET = 21
MEDIA_OBERON = 0xF9
MEDIA_MSDOS = 0xE9
MEDIA_DESCRIPTORS = (MEDIA_OBERON, MEDIA_MSDOS)

VOLUME_ATTR_OFFSET = 11
ATTR_VOLUME = 0x08
ENTRY_DELETED = 0xE5

FAT_NO_LINK = -1

# name[22], time, date, head (int16), size (int32)
DIR_ENTRY_FORMAT = f"<{MAX_NAME_LEN}sHHhi"


# =============================================================================
# Errors
# =============================================================================

class DiskError(ValueError):
    """Base class for everything that can go wrong decoding an image."""


class UnsupportedFormatError(DiskError):
    pass


class CorruptDirectoryError(DiskError):
    pass


class NotFoundError(DiskError):
    pass


class OutOfRangeError(DiskError):
    pass


class CorruptChainError(OutOfRangeError):
    """An allocation chain leaves the table or never reaches the file size."""


# =============================================================================
# Image access
# =============================================================================

class ImageBuffer:
    """Immutable image bytes with bounds-checked block access."""

    __slots__ = ("data",)

    def __init__(self, data):
        self.data = bytes(data)

    @property
    def num_blocks(self):
        return len(self.data) // BLOCK_SIZE

    def blocks(self, start, count):
        if start < 0 or count < 0 or (start + count) * BLOCK_SIZE > len(self.data):
            raise OutOfRangeError(
                f"Blocks {start}..{start + count - 1} outside image "
                f"({self.num_blocks} blocks)")
        return self.data[start * BLOCK_SIZE:(start + count) * BLOCK_SIZE]

    def block(self, index):
        return self.blocks(index, 1)


# =============================================================================
# Byte reading helpers
# =============================================================================

def read_le24(data, offset):
    return data[offset] | (data[offset + 1] << 8) | (data[offset + 2] << 16)


def sign12(value):
    if value > 2047:
        value -= 4096
    return value


# =============================================================================
# Allocation table
# =============================================================================

def decode_allocation_table(raw):
    """Unpack the 12-bit link table from the raw bytes of blocks 1-3.

    Entries 0 and 1 belong to the boot and table blocks and are never
    real links; the first 3-byte group (their on-disk slot) is skipped.
    """
    fat = [FAT_NO_LINK, FAT_NO_LINK]
    src = 3
    while len(fat) < FAT_ENTRIES:
        n = read_le24(raw, src)
        fat.append(sign12(n % 4096))
        fat.append(sign12(n // 4096))
        src += 3
    return tuple(fat[:FAT_ENTRIES])


# =============================================================================
# Directory entries
# =============================================================================

class FileDesc:
    __slots__ = ("raw_name", "name", "time_val", "date_val", "head", "size")

    def __init__(self, raw_name, time_val, date_val, head, size):
        self.raw_name = raw_name
        self.name = decode_name(raw_name)
        self.time_val = time_val
        self.date_val = date_val
        self.head = head
        self.size = size

    @property
    def timestamp(self):
        return decode_timestamp(self.date_val, self.time_val)

    def __repr__(self):
        return f"FileDesc({self.name!r}, size={self.size}, head={self.head})"


def decode_name(raw_name):
    end = raw_name.find(b"\x00")
    if end < 0:
        end = len(raw_name)
    return raw_name[:end].decode("ascii", errors="replace")


def decode_timestamp(date_val, time_val):
    """Return POSIX seconds for a packed Oberon date/time pair, local time.

    Date: 7 bits year since 1900, 4 bits month, 5 bits day.
    Time: 5 bits hour, 6 bits minute, 5 bits seconds/2 (the low seconds
    bit is dropped on diskettes). Fields are not range checked; mktime
    normalizes them the same way the calendar arithmetic would.
    """
    year = 1900 + (date_val >> 9 & 0x7F)
    month = date_val >> 5 & 0x0F
    day = date_val & 0x1F

    hour = time_val >> 11 & 0x1F
    minute = time_val >> 5 & 0x3F
    second = (time_val & 0x1F) * 2

    return time.mktime((year, month, day, hour, minute, second, 0, 0, -1))


def parse_dir_entry(buf, slot):
    raw_name, time_val, date_val, head, size = struct.unpack_from(
        DIR_ENTRY_FORMAT, buf, slot * DIR_ENTRY_SIZE)
    return FileDesc(raw_name, time_val, date_val, head, size)


def read_dir_block(disk, block):
    buf = disk.image.block(block)
    return [parse_dir_entry(buf, i) for i in range(DIR_ENTRIES_PER_BLOCK)]


def is_end_marker(entry):
    first = entry.raw_name[0]
    return first == 0 or first == ENTRY_DELETED


# =============================================================================
# Disk
# =============================================================================

class Diskette:
    """A loaded image plus its allocation table, decoded once."""

    __slots__ = ("image", "fat")

    def __init__(self, data):
        self.image = data if isinstance(data, ImageBuffer) else ImageBuffer(data)
        self.fat = decode_allocation_table(
            self.image.blocks(FAT_START_BLOCK, FAT_BLOCKS))


def open_image(path):
    with open(path, "rb") as fp:
        return Diskette(fp.read())


def media_descriptor(disk):
    return disk.image.block(0)[MEDIA_DESCRIPTOR_OFFSET]


def check_boot_sector(disk):
    media = media_descriptor(disk)
    if media not in MEDIA_DESCRIPTORS:
        raise UnsupportedFormatError(
            f"Neither Oberon nor MS-DOS formatted diskette (media byte 0x{media:02x})")
    return media


def check_volume_label(entries):
    label = entries[0]
    if label.raw_name[VOLUME_ATTR_OFFSET] != ATTR_VOLUME:
        raise CorruptDirectoryError(
            f"Block {DIR_START_BLOCK} does not contain a valid volume label")
    first = label.raw_name[0]
    if first != 0 and first < ENTRY_DELETED:
        raise UnsupportedFormatError("Not Oberon format")
    return label


# =============================================================================
# Listing
# =============================================================================

def list_files(disk):
    """Return the FileDesc records of the directory in on-disk order."""
    check_boot_sector(disk)

    block = DIR_START_BLOCK
    entries = read_dir_block(disk, block)
    check_volume_label(entries)

    result = []
    slot = 1
    while True:
        entry = entries[slot]
        if is_end_marker(entry):
            break
        result.append(entry)

        slot += 1
        if slot == DIR_ENTRIES_PER_BLOCK:
            block += 1
            slot = 0
            if block == DIR_END_BLOCK:
                break
            entries = read_dir_block(disk, block)

    return result


def find_file(disk, name):
    if isinstance(name, bytes):
        name = decode_name(name)
    for entry in list_files(disk):
        if entry.name == name:
            return entry
    raise NotFoundError(f"File {name!r} not found")


# =============================================================================
# File reading
# =============================================================================

def unit_block(unit):
    return DATA_START_BLOCK + UNIT_BLOCKS * unit


def read_unit(disk, unit):
    return disk.image.blocks(unit_block(unit), UNIT_BLOCKS)


def iter_chain(disk, entry):
    """Yield the allocation units holding entry's data, head first.

    Stops after the unit that holds the last byte. A link that leaves the
    table, or a chain longer than the table, raises CorruptChainError.
    """
    if entry.size < 0:
        raise CorruptDirectoryError(f"{entry.name}: negative size {entry.size}")
    if entry.size == 0:
        return

    unit = entry.head
    remaining = entry.size
    visited = 0
    while True:
        if not 0 <= unit < FAT_ENTRIES:
            raise CorruptChainError(
                f"{entry.name}: chain link {unit} outside allocation table "
                f"({remaining} bytes left)")
        visited += 1
        if visited > FAT_ENTRIES:
            raise CorruptChainError(f"{entry.name}: allocation chain loops")
        yield unit
        if remaining <= UNIT_SIZE:
            return
        remaining -= UNIT_SIZE
        unit = disk.fat[unit]


def read_file(disk, entry):
    """Return exactly entry.size bytes of file content."""
    data = bytearray()
    remaining = entry.size
    for unit in iter_chain(disk, entry):
        buf = read_unit(disk, unit)
        if remaining > UNIT_SIZE:
            data.extend(buf)
            remaining -= UNIT_SIZE
        else:
            data.extend(buf[:remaining])
    return bytes(data)


# =============================================================================
# Consistency check
# =============================================================================

def check_disk(disk):
    """Walk every file chain; return a list of problem descriptions."""
    problems = []
    owners = {}
    for entry in list_files(disk):
        try:
            units = list(iter_chain(disk, entry))
            for unit in units:
                read_unit(disk, unit)
        except DiskError as e:
            problems.append(str(e))
            continue
        for unit in units:
            if unit in owners:
                problems.append(
                    f"{entry.name}: unit {unit} cross-linked with {owners[unit]}")
            else:
                owners[unit] = entry.name
    return problems
