#!/usr/bin/env python3
"""
cft.py - Copy Files from Oberon diskette images

Lists, dumps and extracts the files of a 720K Oberon diskette image.

Usage:
    cft.py image.dsk list
    cft.py image.dsk dump NAME > out
    cft.py -C outdir image.dsk extract NAME
    cft.py -C outdir image.dsk extractall
    cft.py image.dsk check
"""

import argparse
import os
import sys
import time

import oberonfs

COMMAND_ALIASES = {
    "l": "list",
    "d": "dump",
    "x": "extract",
    "xa": "extractall",
}
COMMANDS = ["list", "dump", "extract", "extractall", "check"]
NEEDS_NAME = ("dump", "extract")


def format_timestamp(ts):
    return time.strftime("%Y-%m-%d %H:%M:%S", time.localtime(ts))


def is_safe_name(name):
    """Names must stay inside the output directory."""
    if not name or name in (".", ".."):
        return False
    if "/" in name or os.sep in name or (os.altsep and os.altsep in name):
        return False
    return not os.path.isabs(name)


# =============================================================================
# list command
# =============================================================================

def cmd_list(disk):
    for entry in oberonfs.list_files(disk):
        print(f"{entry.size:5d}  {format_timestamp(entry.timestamp)}  {entry.name:<23}")
    return 0


# =============================================================================
# dump command
# =============================================================================

def cmd_dump(disk, name):
    entry = oberonfs.find_file(disk, name)
    data = oberonfs.read_file(disk, entry)
    sys.stdout.buffer.write(data)
    sys.stdout.buffer.flush()
    return 0


# =============================================================================
# extract commands
# =============================================================================

def extract_file(disk, entry, output_dir, verbose=False):
    """Write one file into output_dir and stamp it with its directory time.

    Returns 0 on success, -1 after reporting the error on stderr.
    """
    if not is_safe_name(entry.name):
        print(f"Error: Refusing to extract {entry.name!r}: not a plain file name",
              file=sys.stderr)
        return -1

    out_path = os.path.join(output_dir, entry.name)
    try:
        data = oberonfs.read_file(disk, entry)
    except oberonfs.DiskError as e:
        print(f"Error: Cannot read {entry.name}: {e}", file=sys.stderr)
        return -1

    if verbose:
        print(f"Extracting: {out_path} ({entry.size} bytes)")

    try:
        with open(out_path, "wb") as f:
            f.write(data)
        ts = entry.timestamp
        os.utime(out_path, (ts, ts))
    except (IOError, OSError) as e:
        print(f"Error: Cannot create file: {out_path}: {e}", file=sys.stderr)
        return -1
    return 0


def cmd_extract(disk, name, output_dir, verbose):
    entry = oberonfs.find_file(disk, name)
    os.makedirs(output_dir, exist_ok=True)
    return 0 if extract_file(disk, entry, output_dir, verbose) == 0 else 1


def cmd_extractall(disk, output_dir, verbose):
    entries = oberonfs.list_files(disk)
    os.makedirs(output_dir, exist_ok=True)

    extracted = 0
    errors = 0
    for entry in entries:
        if extract_file(disk, entry, output_dir, verbose) == 0:
            extracted += 1
        else:
            errors += 1

    print(f"Files: {extracted} extracted" + (f", {errors} errors" if errors else ""))
    return 0 if errors == 0 else 1


# =============================================================================
# check command
# =============================================================================

def cmd_check(disk):
    problems = oberonfs.check_disk(disk)
    for problem in problems:
        print(problem)
    if problems:
        print(f"{len(problems)} error(s) found.")
        return 1
    print("No errors found.")
    return 0


# =============================================================================
# Main
# =============================================================================

def main(argv=None):
    parser = argparse.ArgumentParser(
        description="Copy files from an Oberon diskette image",
        usage="%(prog)s [options] image command [name]",
    )
    parser.add_argument("image", help="diskette image file")
    parser.add_argument("command", choices=COMMANDS + list(COMMAND_ALIASES),
                        help="list (l), dump (d), extract (x), extractall (xa), check")
    parser.add_argument("name", nargs="?", help="file name for dump/extract")
    parser.add_argument("-C", "--directory", default=".", dest="output_dir",
                        help="output directory for extract (default: .)")
    parser.add_argument("-v", "--verbose", action="store_true",
                        help="show each extracted file")

    args = parser.parse_args(argv)
    command = COMMAND_ALIASES.get(args.command, args.command)

    if command in NEEDS_NAME and args.name is None:
        print(f"Error: {command} requires a file name", file=sys.stderr)
        parser.print_usage(sys.stderr)
        return 1
    if command not in NEEDS_NAME and args.name is not None:
        print(f"Error: unexpected argument: {args.name}", file=sys.stderr)
        parser.print_usage(sys.stderr)
        return 1

    try:
        disk = oberonfs.open_image(args.image)
    except (IOError, OSError) as e:
        print(f"Error: Cannot open image: {args.image}: {e}", file=sys.stderr)
        return 1
    except oberonfs.DiskError as e:
        print(f"Error: {args.image}: {e}", file=sys.stderr)
        return 1

    try:
        if command == "list":
            return cmd_list(disk)
        elif command == "dump":
            return cmd_dump(disk, args.name)
        elif command == "extract":
            return cmd_extract(disk, args.name, args.output_dir, args.verbose)
        elif command == "extractall":
            return cmd_extractall(disk, args.output_dir, args.verbose)
        else:
            return cmd_check(disk)
    except oberonfs.DiskError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    except (IOError, OSError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
