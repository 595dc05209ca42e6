"""
scan.py — Byte-pattern scanners over a kernel image buffer.

No decoding happens here: each scanner matches the few opcode bytes
GCC emits for one construct and leaves the plausibility checks to the
caller.  All scanners return None (or an empty list) when nothing is
found and never read outside the buffer.
"""

import struct

from .x86 import (PROLOGUE_MARKER, PROLOGUE_REGS, LOCK_OR_OPCODE, LOCK_OR_LEN,
                  DISP_OFF, IMM_OFF, FLAG_BITS)

FWD = 1
RWD = -1

CLUSTER_SIZE = 4
CLUSTER_WINDOW = 1024


def search(buf, start, literal, direction=FWD, max_steps=None):
    """Find *literal* stepping from *start* by *direction*.

    At most *max_steps* positions are compared (no limit when None).
    Returns the first matching offset or None.
    """
    size = len(buf)
    n = len(literal)
    if direction == FWD and max_steps is None:
        off = buf.find(literal, max(start, 0))
        return off if off >= 0 else None

    pos = start
    steps = 0
    while 0 <= pos < size:
        if max_steps is not None and steps >= max_steps:
            break
        if pos + n <= size and buf[pos:pos + n] == literal:
            return pos
        pos += direction
        steps += 1
    return None


def find_prologue(buf, start):
    """First 'push r12..r15' at or after *start*, or None."""
    size = len(buf)
    off = max(start, 0)
    while True:
        off = buf.find(PROLOGUE_MARKER, off)
        if off < 0 or off + 1 >= size:
            return None
        if buf[off + 1] in PROLOGUE_REGS:
            return off
        off += 1


def find_cluster(buf, start, length=CLUSTER_WINDOW):
    """Collect up to four 'lock or byte [rip+x], flag' hits in a window.

    A hit is the F0 80 opcode pair whose imm8 is a single flag bit in
    the low nibble.  Accepted hits skip the whole instruction.
    """
    size = len(buf)
    end = min(start + length, size)
    matches = []
    off = start
    while off < end and len(matches) < CLUSTER_SIZE:
        off = buf.find(LOCK_OR_OPCODE, off, end + len(LOCK_OR_OPCODE) - 1)
        if off < 0:
            break
        imm = off + IMM_OFF
        if imm < size and buf[imm] in FLAG_BITS:
            matches.append(off)
            off += LOCK_OR_LEN
        else:
            off += 1
    return matches


def reference_address(buf, pos):
    """Address a 'lock or [rip+disp32]' at *pos* refers to, relative to pos.

    The true target is pos + len + disp; the constant length cancels out
    when comparing instructions, so it is left out.
    """
    if pos + DISP_OFF + 4 > len(buf):
        return None
    disp = struct.unpack_from("<i", buf, pos + DISP_OFF)[0]
    return pos + disp


def count_agreeing(buf, matches):
    """Number of matches whose reference address equals the first one's."""
    if not matches:
        return 0
    first = reference_address(buf, matches[0])
    if first is None:
        return 0
    return sum(1 for pos in matches if reference_address(buf, pos) == first)
