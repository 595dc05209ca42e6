#!/usr/bin/env python3
"""
kpatch.py — Patch the boot_params and ramdisk checks of a DSM kernel in place.

This lets you tinker with the initial ramdisk contents without disabling
mount() features and module loading.

Usage:
    python3 kpatch.py <vmlinux>

Patches applied (found dynamically, no hardcoded offsets):
  1. boot_params:  4x lock or -> lock and (not found: logged, run continues)
  2. ramdisk:      jz -> jmp over printk("ramdisk corrupt") (not found: abort)

Exit codes:
  0  done (patch 1 may have been skipped)
  1  bad usage, or patch 2 could not be located
  2  I/O error
  3  not an ELF image, or .init.text / .rodata missing

Dependencies:
    pip install keystone-engine capstone pyelftools
"""

import sys

from elftools.common.exceptions import ELFError

from patchers.elf import load_sections
from patchers.errors import FormatError, PatchError
from patchers.kernel import KernelPatcher

EXIT_OK     = 0
EXIT_FAIL   = 1   # usage or validation
EXIT_IO     = 2
EXIT_FORMAT = 3


def patch_kernel(path):
    """Patch *path* in place.  The file is only written if every check passed."""
    print(f"\n{'=' * 60}")
    print(f"  vmlinux: {path}")
    print(f"{'=' * 60}")

    with open(path, "r+b") as f:
        init_text, rodata = load_sections(f)
        f.seek(0)
        data = bytearray(f.read())
        print(f"  {init_text.name} @ 0x{init_text.offset:X}, "
              f"{rodata.name} @ 0x{rodata.offset:X} (addr 0x{rodata.addr:08X}), "
              f"{len(data)} bytes")

        kp = KernelPatcher(data, init_text.offset, rodata.offset, rodata.addr)
        n = kp.apply()

        f.seek(0)
        f.write(data)
    print(f"  [+] {n} patches applied, saved")
    return n


def main(argv=None):
    argv = sys.argv[1:] if argv is None else argv
    if len(argv) != 1:
        print("You must specify an elf file to patch", file=sys.stderr)
        print(f"usage: {sys.argv[0]} <vmlinux>", file=sys.stderr)
        return EXIT_FAIL

    try:
        patch_kernel(argv[0])
    except OSError as e:
        print(f"[-] {e}", file=sys.stderr)
        return EXIT_IO
    except (ELFError, FormatError) as e:
        print(f"[-] {e}", file=sys.stderr)
        return EXIT_FORMAT
    except PatchError as e:
        print(f"[-] FAILED: {e}", file=sys.stderr)
        return EXIT_FAIL
    return EXIT_OK


if __name__ == "__main__":
    sys.exit(main())
