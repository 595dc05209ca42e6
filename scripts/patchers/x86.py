"""
x86.py — x86-64 opcode patterns used by the kernel heuristics.

Every byte the scanners look for or write is defined here, named after the
instruction it encodes.  Patterns keystone assembles unambiguously come from
keystone; the rest are spelled out and checked against capstone at import.

Dependencies:  keystone-engine, capstone
"""

from keystone import Ks, KS_ARCH_X86, KS_MODE_64
from capstone import Cs, CS_ARCH_X86, CS_MODE_64

# ── Assembly / disassembly singletons ──────────────────────────
_ks = Ks(KS_ARCH_X86, KS_MODE_64)
_cs = Cs(CS_ARCH_X86, CS_MODE_64)

MAX_INSN_LEN = 15


def asm(s):
    enc, _ = _ks.asm(s)
    if not enc:
        raise RuntimeError(f"asm failed: {s}")
    return bytes(enc)


def _verify_disas(code, expected_mnemonic):
    """Verify an encoding disassembles to expected mnemonic via capstone.

    Capstone folds the LOCK prefix into the mnemonic ("lock or"), so only
    the trailing word is compared.
    """
    insns = list(_cs.disasm(code, 0, 1))
    assert insns and insns[0].mnemonic.split()[-1] == expected_mnemonic, \
        f"{code.hex()} disassembles to {insns[0].mnemonic if insns else '???'}, " \
        f"expected {expected_mnemonic}"
    return code


def disas_code(code, addr):
    """Disassemble the first instruction of *code*, placed at *addr*."""
    insns = list(_cs.disasm(bytes(code), addr, 1))
    return insns[0] if insns else None


def fmt_insn(insn, marker=""):
    """Format one capstone instruction for display."""
    if insn is None:
        return "  ???"
    hex_str = " ".join(f"{b:02x}" for b in insn.bytes)
    s = f"  0x{insn.address:08X}: {hex_str:24s}  {insn.mnemonic:8s} {insn.op_str}"
    if marker:
        s += f"  {marker}"
    return s


# ── Function prologue: push r12 … push r15 ─────────────────────
# GCC saves the callee-saved r12-r15 first thing in any non-trivial
# function; REX.B (41) followed by 50+r.
PUSH_R12 = asm("push r12")
PUSH_R15 = asm("push r15")
PROLOGUE_MARKER = PUSH_R12[0]
PROLOGUE_REGS = range(PUSH_R12[1], PUSH_R15[1] + 1)

# ── lock or byte ptr [rip + disp32], imm8 ──────────────────────
#   [0] F0 lock  [1] 80 grp1 r/m8,imm8  [2] ModRM  [3..6] disp32  [7] imm8
LOCK_OR_RIP_IMM8  = _verify_disas(bytes.fromhex("f0800d0000000001"), "or")
LOCK_AND_RIP_IMM8 = _verify_disas(bytes.fromhex("f080250000000001"), "and")
LOCK_OR_OPCODE    = LOCK_OR_RIP_IMM8[:2]
LOCK_OR_LEN       = len(LOCK_OR_RIP_IMM8)
MODRM_OFF         = 2
DISP_OFF          = 3
IMM_OFF           = 7

# ModRM reg field selects the grp1 operation: 0D is /1 (OR), 25 is /4 (AND).
OR_SELECTOR  = LOCK_OR_RIP_IMM8[MODRM_OFF]
AND_SELECTOR = LOCK_AND_RIP_IMM8[MODRM_OFF]

FLAG_BITS = frozenset((0x01, 0x02, 0x04, 0x08))

# ── mov r64, imm32 (sign-extended) ─────────────────────────────
MOV_RM64_IMM32 = _verify_disas(bytes.fromhex("48c7c000000000"), "mov")[:2]
MOV_REG_MODRM  = range(0xC0, 0xC8)   # mod=11, rax … rdi
MOV_IMM_OFF    = 3

# ── test eax, eax / jz rel8 / jmp rel8 ─────────────────────────
TEST_EAX_EAX = asm("test eax, eax")
JZ_SHORT     = _verify_disas(b"\x74\x00", "je")[0]
JMP_SHORT    = _verify_disas(b"\xeb\x00", "jmp")[0]
