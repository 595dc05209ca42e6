import pytest

from patchers.kernel import KernelPatcher

from images import build_kernel, build_code, build_rodata, build_elf


@pytest.fixture
def kernel():
    return build_kernel()


@pytest.fixture
def make_patcher():
    def _make(k, verbose=False):
        return KernelPatcher(k.data, k.init_text_off, k.rodata_off, k.rodata_va,
                             verbose=verbose)
    return _make


@pytest.fixture
def write_vmlinux(tmp_path):
    """Write an ELF image to disk; returns (path, ors, jz) as file offsets."""
    def _write(boot_params=True, ramdisk=True, message=True, rodata_name=".rodata",
               init_name=".init.text"):
        code, ors, jz = build_code(boot_params=boot_params, ramdisk=ramdisk)
        image, init_off, _ = build_elf(code, build_rodata(message),
                                       rodata_name=rodata_name, init_name=init_name)
        path = tmp_path / "vmlinux"
        path.write_bytes(image)
        return (path, [init_off + o for o in ors],
                None if jz is None else init_off + jz)
    return _write
