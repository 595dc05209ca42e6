"""
elf.py — Section lookup for vmlinux images.

The patchers only need two coordinates out of the ELF: where .init.text
starts in the file, and where .rodata starts both in the file and in the
kernel's address space.

Dependencies:  pyelftools
"""

from collections import namedtuple

from elftools.elf.elffile import ELFFile

from .errors import FormatError

Section = namedtuple("Section", ["name", "offset", "addr"])

INIT_TEXT = ".init.text"
RODATA = ".rodata"


def _section(elf, name):
    sec = elf.get_section_by_name(name)
    if sec is None:
        raise FormatError(f"{name} section not found")
    # Kernel code loads .rodata addresses as sign-extended imm32, so only
    # the low 32 bits ever appear in the instruction stream.
    return Section(name, sec["sh_offset"], sec["sh_addr"] & 0xFFFFFFFF)


def load_sections(stream):
    """Return (init_text, rodata) Sections from an open ELF stream.

    Raises elftools' ELFError for malformed images and FormatError when
    either section is missing.
    """
    elf = ELFFile(stream)
    return _section(elf, INIT_TEXT), _section(elf, RODATA)
