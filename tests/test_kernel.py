import struct

import pytest

from patchers.errors import PatternNotFound, SequenceMismatch
from patchers.kernel import KernelPatcher

from images import (build_kernel, filler, put, lock_or, write_boot_params,
                    PUSH_R12, STR_VA)


def _diff(before, after):
    assert len(before) == len(after)
    return {i: (a, b) for i, (a, b) in enumerate(zip(before, after)) if a != b}


def _applied(data, patches):
    out = bytearray(data)
    for off, patch_bytes, _ in patches:
        out[off:off + len(patch_bytes)] = patch_bytes
    return out


# ── boot_params ──────────────────────────────────────────────────

def test_boot_params_patches_or_selectors(kernel, make_patcher):
    kp = make_patcher(kernel)
    assert kp.patch_boot_params() is True
    assert _diff(kernel.data, _applied(kernel.data, kp.patches)) == {
        pos + 2: (0x0D, 0x25) for pos in kernel.ors}


def test_boot_params_does_not_touch_buffer(kernel, make_patcher):
    before = bytes(kernel.data)
    make_patcher(kernel).patch_boot_params()
    assert kernel.data == before


def test_boot_params_concrete_cluster(make_patcher):
    # lock or byte [rip+0x10], 1 as emitted with a zero ModRM, then three
    # more ORs on the same byte
    code = filler(0x400)
    put(code, 0x10, PUSH_R12)
    first = 0x20
    put(code, first, bytes.fromhex("f080001000000001"))
    target = first + 0x10
    ors = [first]
    for pos, flag in ((0x30, 2), (0x40, 4), (0x50, 8)):
        put(code, pos, lock_or(pos, target, flag, selector=0x00))
        ors.append(pos)
    k = build_kernel(code=code)

    kp = make_patcher(k)
    assert kp.patch_boot_params() is True
    assert _diff(k.data, _applied(k.data, kp.patches)) == {
        k.init_text_off + pos + 2: (0x00, 0x25) for pos in ors}


def test_boot_params_three_ors_is_not_a_cluster(make_patcher):
    k = build_kernel(ramdisk=False)
    put(k.data, k.ors[3], filler(8))
    kp = make_patcher(k)
    assert kp.patch_boot_params() is False
    assert kp.patches == []


def test_boot_params_non_flag_immediate(make_patcher):
    code = filler(0x400)
    write_boot_params(code, 0x40, flags=(1, 2, 4, 0x10))
    kp = make_patcher(build_kernel(code=code))
    assert kp.patch_boot_params() is False
    assert kp.patches == []


def test_boot_params_no_ors_at_all(make_patcher):
    code = filler(0x4000)
    for off in range(0, len(code), 0x300):
        put(code, off, PUSH_R12)
    kp = make_patcher(build_kernel(code=code))
    assert kp.patch_boot_params() is False
    assert kp.patches == []


def test_boot_params_no_prologue(make_patcher):
    k = build_kernel(ramdisk=False)
    put(k.data, k.ors[0] - 7, filler(2))
    kp = make_patcher(k)
    assert kp.patch_boot_params() is False


def test_boot_params_pointer_mismatch_then_real_cluster(make_patcher, capsys):
    code = filler(0x800)
    decoys = write_boot_params(code, 0x40, target=0x3000)
    struct.pack_into("<i", code, decoys[1] + 3, 0x1234)
    ors = write_boot_params(code, 0x200, target=0x5000)
    k = build_kernel(code=code)

    kp = make_patcher(k, verbose=True)
    assert kp.patch_boot_params() is True
    assert sorted(off for off, _, _ in kp.patches) == [
        k.init_text_off + pos + 2 for pos in ors]
    out = capsys.readouterr().out
    assert "LOCK-OR ptr mismatch - 3/4 matched" in out
    assert "match found" in out


def test_boot_params_partial_window_not_skipped(make_patcher):
    # two ORs fall in the first window, the rest of the cluster right after
    code = filler(0x1000)
    put(code, 0, PUSH_R12)
    put(code, 0x3F0, b"\x41\x57\x41\x56")   # push r15; push r14
    ors = []
    for pos, flag in ((0x3F4, 1), (0x3FC, 2), (0x408, 4), (0x410, 8)):
        put(code, pos, lock_or(pos, 0x6000, flag))
        ors.append(pos)
    k = build_kernel(code=code)

    kp = make_patcher(k)
    assert kp.patch_boot_params() is True
    assert sorted(off for off, _, _ in kp.patches) == [
        k.init_text_off + pos + 2 for pos in ors]


def test_boot_params_starts_at_init_text(make_patcher):
    k = build_kernel(ramdisk=False)
    kp = KernelPatcher(k.data, k.ors[-1] + 8, k.rodata_off, k.rodata_va,
                       verbose=False)
    assert kp.patch_boot_params() is False


def test_boot_params_second_run_rewrites_same_bytes(kernel, make_patcher):
    kp = make_patcher(kernel)
    kp.patch_boot_params()
    patched = _applied(kernel.data, kp.patches)

    again = KernelPatcher(patched, kernel.init_text_off, kernel.rodata_off,
                          kernel.rodata_va, verbose=False)
    assert again.patch_boot_params() is True
    assert _applied(patched, again.patches) == patched


# ── ramdisk check ────────────────────────────────────────────────

def test_ramdisk_patches_jz(make_patcher):
    k = build_kernel(boot_params=False)
    before = bytes(k.data)
    assert make_patcher(k).apply() == 1
    assert _diff(before, k.data) == {k.jz: (0x74, 0xEB)}


def test_ramdisk_string_missing(make_patcher):
    k = build_kernel(message=False)
    before = bytes(k.data)
    with pytest.raises(PatternNotFound):
        make_patcher(k).apply()
    assert k.data == before


def test_ramdisk_string_before_rodata_ignored(make_patcher):
    k = build_kernel(message=False)
    put(k.data, 0x10, b"\x013ramdisk corrupt\x00")
    with pytest.raises(PatternNotFound):
        make_patcher(k).patch_ramdisk_check()


def test_ramdisk_no_code_reference(make_patcher):
    k = build_kernel(ramdisk=False)
    with pytest.raises(PatternNotFound, match="no code ref"):
        make_patcher(k).patch_ramdisk_check()


def test_ramdisk_reference_not_a_mov(make_patcher):
    k = build_kernel()
    k.data[k.jz + 2] = 0x49
    with pytest.raises(SequenceMismatch, match="49 c7"):
        make_patcher(k).patch_ramdisk_check()


def test_ramdisk_mov_to_memory(make_patcher):
    k = build_kernel()
    k.data[k.jz + 4] = 0x07
    with pytest.raises(SequenceMismatch, match="got 07"):
        make_patcher(k).patch_ramdisk_check()


def test_ramdisk_no_test_instruction(make_patcher):
    k = build_kernel()
    put(k.data, k.jz - 2, filler(2))
    with pytest.raises(PatternNotFound, match="TEST eax,eax"):
        make_patcher(k).patch_ramdisk_check()


def test_ramdisk_not_jz(make_patcher):
    k = build_kernel()
    k.data[k.jz] = 0x75
    with pytest.raises(SequenceMismatch, match="expected JZ"):
        make_patcher(k).patch_ramdisk_check()


def test_ramdisk_already_patched(make_patcher):
    k = build_kernel()
    make_patcher(k).apply()
    patched = bytes(k.data)

    with pytest.raises(SequenceMismatch):
        make_patcher(k).apply()
    assert k.data == patched


# ── whole run ────────────────────────────────────────────────────

def test_apply_both_patches(kernel, make_patcher, capsys):
    before = bytes(kernel.data)
    assert make_patcher(kernel, verbose=True).apply() == 5

    expected = {pos + 2: (0x0D, 0x25) for pos in kernel.ors}
    expected[kernel.jz] = (0x74, 0xEB)
    assert _diff(before, kernel.data) == expected
    assert len(kernel.data) == len(before)
    out = capsys.readouterr().out
    assert "VERIFICATION: 5 patches applied" in out
    for pos in kernel.ors:
        assert f"0x{pos + 2:08X}: and byte ptr" in out
    assert f"0x{kernel.jz:08X}: jmp " in out


def test_apply_ramdisk_failure_discards_boot_params(make_patcher):
    k = build_kernel(message=False)
    before = bytes(k.data)
    kp = make_patcher(k)
    with pytest.raises(PatternNotFound):
        kp.apply()
    assert len(kp.patches) == 4
    assert k.data == before


def test_ramdisk_reference_at_start_of_file(make_patcher):
    k = build_kernel(ramdisk=False)
    put(k.data, 0, struct.pack("<I", STR_VA))
    with pytest.raises(SequenceMismatch) as exc:
        make_patcher(k).patch_ramdisk_check()
    msg = str(exc.value)
    assert "start of file" in msg
    assert len(msg) < 200
