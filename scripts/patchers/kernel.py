#!/usr/bin/env python3
"""
kernel.py — Dynamic patcher for DSM x86-64 vmlinux images.

Disables two integrity checks without symbols or a disassembler pass,
using byte patterns GCC emits for them:

  1. boot_params flags: a function under .init.text doing four
     `lock or byte [rip+x], n` (n = 1/2/4/8) on the same byte.  Each
     becomes `lock and`, so the flags are cleared instead of set.
  2. ramdisk check: the `test eax, eax; jz` guarding
     printk(KERN_ERR "ramdisk corrupt").  The jz becomes jmp.

Dependencies:  keystone-engine, capstone, pyelftools
"""

import struct

from .errors import PatternNotFound, SequenceMismatch
from .scan import (RWD, CLUSTER_SIZE, CLUSTER_WINDOW, search, find_prologue,
                   find_cluster, reference_address, count_agreeing)
from .x86 import (PUSH_R12, LOCK_OR_LEN, MODRM_OFF, AND_SELECTOR,
                  MOV_RM64_IMM32, MOV_REG_MODRM, MOV_IMM_OFF,
                  TEST_EAX_EAX, JZ_SHORT, JMP_SHORT,
                  MAX_INSN_LEN, disas_code, fmt_insn)

# "\x01" "3" is KERN_SOH KERN_ERR; the string is matched from the level on.
RAMDISK_CORRUPT = b"3ramdisk corrupt"
TEST_SEARCH_BACK = 32


# ── KernelPatcher ────────────────────────────────────────────────

class KernelPatcher:
    """Dynamic vmlinux patcher: patch sites are found at runtime.

    *init_text_off* is the file offset of .init.text, *rodata_off* and
    *rodata_va* the file offset and (low 32 bits of the) address of .rodata.
    """

    def __init__(self, data, init_text_off, rodata_off, rodata_va, verbose=True):
        self.data          = data            # bytearray (mutable)
        self.raw           = bytes(data)     # immutable snapshot for searching
        self.size          = len(data)
        self.init_text_off = init_text_off
        self.rodata_off    = rodata_off
        self.rodata_va     = rodata_va
        self.patches       = []              # collected (offset, bytes, description)
        self.insn_starts   = {}              # patch offset -> start of its instruction
        self.verbose       = verbose

    # ── Logging ──────────────────────────────────────────────────
    def _log(self, msg):
        if self.verbose:
            print(msg)

    def _print_patch_context(self, off, patch_bytes, desc, insn_off):
        """Print the instruction holding a patch site before and after."""
        before = self.raw[insn_off:insn_off + MAX_INSN_LEN]
        after = bytearray(before)
        rel = off - insn_off
        after[rel:rel + len(patch_bytes)] = patch_bytes

        lines = [f"  ┌─ PATCH 0x{off:08X}: {desc}"]
        lines.append("  │ BEFORE:")
        lines.append(fmt_insn(disas_code(before, insn_off)))
        lines.append("  │ AFTER:")
        lines.append(fmt_insn(disas_code(after, insn_off), "  ◄━━ NEW"))
        lines.append("  └─")
        self._log("\n".join(lines))

    def emit(self, off, patch_bytes, desc, insn_off=None):
        """Record a patch; *insn_off* is where its instruction starts."""
        if insn_off is None:
            insn_off = off
        self.patches.append((off, patch_bytes, desc))
        self.insn_starts[off] = insn_off
        if self.verbose:
            self._print_patch_context(off, patch_bytes, desc, insn_off)

    # ═══════════════════════════════════════════════════════════════
    # Per-patch finders
    # ═══════════════════════════════════════════════════════════════

    def patch_boot_params(self):
        """Patch 1: turn the four boot_params flag ORs into ANDs.

        Any non-trivial function starts by pushing some of r12-r15, so each
        such push is taken as a candidate and the next window of code is
        checked for the LOCK OR cluster.  Not finding it is not fatal.
        """
        self._log("\n[1] boot_params: 4x LOCK OR [ptr],n flag check")

        cursor = self.init_text_off
        candidates = 0
        while cursor < self.size:
            func = find_prologue(self.raw, cursor)
            if func is None:
                break
            candidates += 1

            matches = find_cluster(self.raw, cursor)
            if len(matches) != CLUSTER_SIZE:
                # Later ORs of a partial cluster may lie past the window, so
                # only an empty window can be skipped whole.
                cursor = func + len(PUSH_R12)
                if not matches:
                    cursor += CLUSTER_WINDOW
                continue

            self._log(f"  [?] possible f() @ 0x{cursor:X} "
                      f"(candidate {candidates}, push @ 0x{func:X})")
            for idx, pos in enumerate(matches):
                insn = self.raw[pos:pos + LOCK_OR_LEN]
                ref = reference_address(self.raw, pos)
                self._log(f"      LOCK-OR#{idx} @ 0x{pos:X} => {insn.hex(' ')} "
                          f"[RIP+0x{ref:X}]")

            agreeing = count_agreeing(self.raw, matches)
            if agreeing != CLUSTER_SIZE:
                self._log(f"  [-] LOCK-OR ptr mismatch - "
                          f"{agreeing}/{CLUSTER_SIZE} matched")
                cursor = matches[-1] + LOCK_OR_LEN
                continue

            self._log(f"  [+] all {agreeing} LOCK-OR ptrs equal - match found")
            for pos in matches:
                self.emit(pos + MODRM_OFF, bytes((AND_SELECTOR,)),
                          "lock or -> lock and [boot_params]", insn_off=pos)
            return True

        self._log(f"  [-] failed to find matching sequences "
                  f"({candidates} candidates)")
        return False

    def patch_ramdisk_check(self):
        """Patch 2: jz -> jmp over the 'ramdisk corrupt' printk.

        Every step is mandatory; a miss raises PatternNotFound or
        SequenceMismatch and leaves self.patches without a ramdisk entry.
        """
        self._log("\n[2] ramdisk check: JZ before printk(\"ramdisk corrupt\")")

        str_off = search(self.raw, self.rodata_off, RAMDISK_CORRUPT)
        if str_off is None:
            raise PatternNotFound(f"string not found: {RAMDISK_CORRUPT!r}")
        # printk gets the address of the KERN_SOH byte in front of the level
        str_va = (self.rodata_va + (str_off - self.rodata_off) - 1) & 0xFFFFFFFF
        self._log(f"  [*] string @ 0x{str_off:X}, LE arg addr 0x{str_va:08X}")

        ref_off = search(self.raw, 0, struct.pack("<I", str_va))
        if ref_off is None:
            raise PatternNotFound(f"no code ref to 0x{str_va:08X}")

        mov_off = ref_off - MOV_IMM_OFF
        if mov_off < 0 or self.raw[mov_off:mov_off + 2] != MOV_RM64_IMM32:
            if mov_off < 0:
                got = "start of file"
            else:
                got = self.raw[mov_off:mov_off + 2].hex(" ")
            raise SequenceMismatch(
                f"expected MOV reg,imm32 before printk arg @ 0x{ref_off:X}, "
                f"got {got}")
        modrm = self.raw[mov_off + 2]
        if modrm not in MOV_REG_MODRM:
            raise SequenceMismatch(
                f"expected MOV w/reg operand [C0-C7] @ 0x{mov_off:X}, "
                f"got {modrm:02X}")
        self._log(f"  [+] printk MOV @ 0x{mov_off:08X}")

        # call <check>; test eax,eax; jz <ok> sits a few bytes up
        test_off = search(self.raw, mov_off, TEST_EAX_EAX, RWD, TEST_SEARCH_BACK)
        if test_off is None:
            raise PatternNotFound(
                f"TEST eax,eax not found within {TEST_SEARCH_BACK} bytes "
                f"before 0x{mov_off:X}")
        self._log(f"  [+] TEST eax,eax @ 0x{test_off:08X}")

        jz_off = test_off + len(TEST_EAX_EAX)
        if jz_off >= self.size or self.raw[jz_off] != JZ_SHORT:
            got = self.raw[jz_off:jz_off + 1].hex() or "EOF"
            raise SequenceMismatch(f"expected JZ @ 0x{jz_off:X}, got {got}")

        self.emit(jz_off, bytes((JMP_SHORT,)), "jz -> jmp [ramdisk check]")
        return True

    # ═══════════════════════════════════════════════════════════════
    # Driver
    # ═══════════════════════════════════════════════════════════════

    def find_all(self):
        """Run both finders.  Only the ramdisk check may raise."""
        self.patches = []
        self.insn_starts = {}
        self.patch_boot_params()
        self.patch_ramdisk_check()
        return self.patches

    def apply(self):
        """Find all patches and apply them to self.data.  Returns patch count."""
        patches = self.find_all()
        for off, patch_bytes, desc in patches:
            self.data[off:off + len(patch_bytes)] = patch_bytes

        if self.verbose and patches:
            self._log(f"\n{'═'*60}")
            self._log(f"VERIFICATION: {len(patches)} patches applied")
            self._log(f"{'═'*60}")
            for off, patch_bytes, desc in sorted(patches):
                insn_off = self.insn_starts.get(off, off)
                insn = disas_code(self.data[insn_off:insn_off + MAX_INSN_LEN], insn_off)
                dis_str = f"{insn.mnemonic} {insn.op_str}" if insn else "???"
                self._log(f"  0x{off:08X}: {dis_str:40s} [{desc}]")

        return len(patches)


# ── CLI entry point (read-only preview) ──────────────────────────
if __name__ == "__main__":
    import sys, argparse

    from .elf import load_sections
    from .errors import PatchError

    parser = argparse.ArgumentParser(
        description="Preview the boot_params / ramdisk patches on a DSM vmlinux "
                    "without writing it")
    parser.add_argument("vmlinux", help="Path to the kernel ELF image")
    parser.add_argument("-q", "--quiet", action="store_true",
                        help="Suppress search progress (only show patches)")
    args = parser.parse_args()

    print(f"Loading {args.vmlinux}...")
    with open(args.vmlinux, "rb") as f:
        init_text, rodata = load_sections(f)
        f.seek(0)
        data = bytearray(f.read())
    print(f"  {init_text.name}: foff 0x{init_text.offset:X}")
    print(f"  {rodata.name}:     foff 0x{rodata.offset:X}, addr 0x{rodata.addr:08X}")
    print(f"  size:        {len(data)} bytes ({len(data)/1024/1024:.1f} MB)")

    kp = KernelPatcher(data, init_text.offset, rodata.offset, rodata.addr,
                       verbose=not args.quiet)
    try:
        patches = kp.find_all()
    except PatchError as e:
        print(f"\n[-] {e}")
        patches = kp.patches
        status = 1
    else:
        status = 0

    print(f"\n{'═'*72}")
    print(f"  {len(patches)} PATCHES — before / after")
    print(f"{'═'*72}")
    for i, (off, patch_bytes, desc) in enumerate(sorted(patches), 1):
        print(f"  [{i:2d}] 0x{off:08X}: "
              f"{kp.raw[off:off + len(patch_bytes)].hex()} -> {patch_bytes.hex()}"
              f"  {desc}")
    sys.exit(status)
