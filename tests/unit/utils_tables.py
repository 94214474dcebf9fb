from __future__ import annotations

from x86db.tables import Architecture, FlagRegister, RegisterClass, Tables

_gpr_names = {
    8: "al cl dl bl ah ch dh bh",
    16: "ax cx dx bx sp bp si di",
    32: "eax ecx edx ebx esp ebp esi edi",
    64: "rax rcx rdx rbx rsp rbp rsi rdi r8 r9 r10 r11 r12 r13 r14 r15",
}

TEST_MACROS = {
    "_lock": "lock=legacy|hardware|explicit",
    "_arith": "eflags.of=M eflags.sf=M eflags.zf=M eflags.af=M eflags.pf=M eflags.cf=M",
    "_lockarith": "_lock _arith",
    "_amd": "vendor=amd",
}


def make_tables(macros: dict[str, str] | None = None, template: str = "") -> Tables:
    """Return tables with a subset of the x86 registers and flags."""
    register_classes = [
        RegisterClass(f"r{width:d}", width, tuple(names.split()))
        for width, names in _gpr_names.items()
    ]
    register_classes += [
        RegisterClass("r8x", 8, ("al", "cl", "dl", "bl", "spl", "bpl", "sil", "dil")),
        RegisterClass("sreg", 16, ("es", "cs", "ss", "ds", "fs", "gs")),
        RegisterClass("creg", None, tuple(f"cr{i:d}" for i in range(9))),
        RegisterClass("st", 80, tuple(f"st{i:d}" for i in range(8))),
        RegisterClass("xmm", 128, tuple(f"xmm{i:d}" for i in range(32))),
        RegisterClass("ymm", 256, tuple(f"ymm{i:d}" for i in range(32))),
        RegisterClass("zmm", 512, tuple(f"zmm{i:d}" for i in range(32))),
        RegisterClass("k", 64, tuple(f"k{i:d}" for i in range(8))),
    ]
    flag_registers = [
        FlagRegister("eflags", 32, tuple("cf - pf - af - zf sf tf if df of".split())),
        FlagRegister("mxcsr", 32, ("ie", "de", "ze", "oe", "ue", "pe")),
        FlagRegister("x87Flags.sw", 16, ("ie", "de", "ze", "oe", "ue", "pe")),
    ]
    return Tables(
        (Architecture("x86", 32), Architecture("x64", 64)),
        register_classes,
        flag_registers,
        macros,
        template,
    )
