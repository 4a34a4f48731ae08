"""Device access filter programs for cgroup v2, built as eBPF instruction lists."""

from __future__ import annotations

import enum
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, replace

LICENSE = "Apache"

BPF_DEVCG_DEV_BLOCK = 1
BPF_DEVCG_DEV_CHAR = 2
BPF_DEVCG_ACC_MKNOD = 1
BPF_DEVCG_ACC_READ = 2
BPF_DEVCG_ACC_WRITE = 4

_ACC_ALL = BPF_DEVCG_ACC_READ | BPF_DEVCG_ACC_WRITE | BPF_DEVCG_ACC_MKNOD
_MAX_UINT32 = (1 << 32) - 1


class Register(enum.IntEnum):
    """An eBPF register."""

    R0 = 0
    R1 = 1
    R2 = 2
    R3 = 3
    R4 = 4
    R5 = 5

    def __str__(self) -> str:
        return f"r{int(self)}"


class _Kind(enum.Enum):
    LOAD_MEM = "load_mem"
    ALU_IMM = "alu_imm"
    ALU_REG = "alu_reg"
    JUMP_IMM = "jump_imm"
    EXIT = "exit"


@dataclass(frozen=True)
class Instruction:
    """A single eBPF instruction, optionally labelled and referring to a label."""

    op: str
    kind: _Kind
    dst: Register = Register.R0
    src: Register = Register.R0
    offset: int = 0
    constant: int = 0
    reference: str = ""
    symbol: str = ""

    def __str__(self) -> str:
        if self.kind is _Kind.EXIT:
            return self.op
        if self.kind is _Kind.LOAD_MEM:
            text = f"{self.op} dst: {self.dst} src: {self.src} off: {self.offset} imm: {self.constant}"
        elif self.kind is _Kind.ALU_IMM:
            text = f"{self.op} dst: {self.dst} imm: {self.constant}"
        elif self.kind is _Kind.ALU_REG:
            text = f"{self.op} dst: {self.dst} src: {self.src}"
        else:
            text = f"{self.op} dst: {self.dst} off: {self.offset} imm: {self.constant}"
        if self.reference:
            text += f" <{self.reference}>"
        return text


class Instructions(list):
    """A list of instructions that renders as a labelled listing."""

    def __str__(self) -> str:
        if not self:
            return ""
        width = len(str(len(self) - 1))
        lines = []
        for index, instruction in enumerate(self):
            if instruction.symbol:
                lines.append(f"{instruction.symbol}:")
            lines.append(f"\t{index:>{width}}: {instruction}")
        return "\n".join(lines) + "\n"


@dataclass
class DeviceRule:
    """A device cgroup rule; a major or minor of -1 matches any number."""

    type: str = "a"
    major: int = -1
    minor: int = -1
    access: str = ""
    allow: bool = False


def _to_int32(value: int) -> int:
    return ((value + (1 << 31)) % (1 << 32)) - (1 << 31)


def _load_mem(dst: Register, src: Register, offset: int, size: str) -> Instruction:
    return Instruction(f"LdXMem{size}", _Kind.LOAD_MEM, dst=dst, src=src, offset=offset)


def _alu_imm32(op: str, dst: Register, value: int) -> Instruction:
    return Instruction(f"{op}32Imm", _Kind.ALU_IMM, dst=dst, constant=value)


def _alu_reg32(op: str, dst: Register, src: Register) -> Instruction:
    return Instruction(f"{op}32Reg", _Kind.ALU_REG, dst=dst, src=src)


def _jump_imm(op: str, dst: Register, value: int, label: str) -> Instruction:
    return Instruction(f"{op}Imm", _Kind.JUMP_IMM, dst=dst, offset=-1, constant=value, reference=label)


def _exit() -> Instruction:
    return Instruction("Exit", _Kind.EXIT)


def _accept_block(accept: bool) -> list[Instruction]:
    return [_alu_imm32("Mov", Register.R0, 1 if accept else 0), _exit()]


class _Program:
    def __init__(self) -> None:
        self.insts = Instructions()
        self.has_wildcard = False
        self.block_id = 0
        # Context layout: u32 access_type (type low 16 bits, access high), u32 major, u32 minor.
        self.insts.extend(
            [
                _load_mem(Register.R2, Register.R1, 0, "H"),
                _load_mem(Register.R3, Register.R1, 0, "W"),
                _alu_imm32("RSh", Register.R3, 16),
                _load_mem(Register.R4, Register.R1, 4, "W"),
                _load_mem(Register.R5, Register.R1, 8, "W"),
            ]
        )

    def append_device(self, dev: DeviceRule) -> None:
        if self.block_id < 0:
            raise RuntimeError("the program is finalized")
        if self.has_wildcard:
            return

        if dev.type == "c":
            bpf_type, has_type = BPF_DEVCG_DEV_CHAR, True
        elif dev.type == "b":
            bpf_type, has_type = BPF_DEVCG_DEV_BLOCK, True
        elif dev.type == "a":
            bpf_type, has_type = -1, False
        else:
            raise ValueError(f"invalid DeviceType {dev.type!r}")
        if dev.major > _MAX_UINT32:
            raise ValueError(f"invalid major {dev.major}")
        if dev.minor > _MAX_UINT32:
            raise ValueError(f"invalid minor {dev.minor}")
        has_major = dev.major >= 0
        has_minor = dev.minor >= 0

        bpf_access = 0
        for char in dev.access:
            if char == "r":
                bpf_access |= BPF_DEVCG_ACC_READ
            elif char == "w":
                bpf_access |= BPF_DEVCG_ACC_WRITE
            elif char == "m":
                bpf_access |= BPF_DEVCG_ACC_MKNOD
            else:
                raise ValueError(f"unknown device access {ord(char)}")
        has_access = bpf_access != _ACC_ALL

        block_sym = f"block-{self.block_id}"
        next_sym = f"block-{self.block_id + 1}"
        first = len(self.insts)
        if has_type:
            self.insts.append(_jump_imm("JNE", Register.R2, bpf_type, next_sym))
        if has_access:
            self.insts.extend(
                [
                    _alu_reg32("Mov", Register.R1, Register.R3),
                    _alu_imm32("And", Register.R1, bpf_access),
                    _jump_imm("JEq", Register.R1, 0, next_sym),
                ]
            )
        if has_major:
            self.insts.append(_jump_imm("JNE", Register.R4, _to_int32(dev.major), next_sym))
        if has_minor:
            self.insts.append(_jump_imm("JNE", Register.R5, _to_int32(dev.minor), next_sym))
        if not (has_type or has_access or has_major or has_minor):
            self.has_wildcard = True
        self.insts.extend(_accept_block(dev.allow))
        self.insts[first] = replace(self.insts[first], symbol=block_sym)
        self.block_id += 1

    def finalize(self) -> Instructions:
        if self.has_wildcard:
            return self.insts
        block_sym = f"block-{self.block_id}"
        self.insts.extend(
            [replace(_alu_imm32("Mov", Register.R0, 0), symbol=block_sym), _exit()]
        )
        self.block_id = -1
        return self.insts


def device_filter(devices: Sequence[DeviceRule] | None) -> tuple[Instructions, str]:
    """Build the device filter program for the rules and return it with its license."""
    program = _Program()
    for device in reversed(list(devices or [])):
        program.append_device(device)
    return program.finalize(), LICENSE


def is_rwm(permissions: str) -> bool:
    """Return True when the permission string grants read, write and mknod."""
    return {"r", "w", "m"} <= set(permissions)


def can_skip_ebpf_error(devices: Iterable[DeviceRule]) -> bool:
    """Return True when every rule denies all access, so a load failure is harmless."""
    return all(not dev.allow and is_rwm(dev.access) for dev in devices)