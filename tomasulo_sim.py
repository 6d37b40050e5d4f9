"""
Tomasulo Simulator
============================================================
A unified, pure-Python, cycle-accurate simulation of dynamic instruction
scheduling (Tomasulo's algorithm).

  Register file with producer tags (register renaming)
  Direct-mapped, write-back cache over a flat byte memory
  Reservation stations with result broadcast on a single result bus
  Load/store buffer with conservative address disambiguation
  In-order branch resolution (issue stalls behind every branch)
  Text assembler for the supported MIPS-style subset

Run:
    python3 tomasulo_sim.py                      # runs built-in demo program
    python3 tomasulo_sim.py --file program.s     # loads an assembly file
    python3 tomasulo_sim.py -f prog.s --reg F2=3 --mem 100=42 --log
"""

from __future__ import annotations
import argparse
import re
import struct
import sys
import threading
from enum import Enum
from typing import Callable, Dict, List, NamedTuple, Optional, Tuple

# ─────────────────────────────────────────────────────────────────────────────
# Configuration defaults
# ─────────────────────────────────────────────────────────────────────────────

DEFAULT_FP_ADD_SUB_STATIONS = 3
DEFAULT_FP_MUL_DIV_STATIONS = 2
DEFAULT_INTEGER_ALU_STATIONS = 2
DEFAULT_LOAD_STATIONS = 2
DEFAULT_STORE_STATIONS = 2
DEFAULT_LOAD_STORE_BUFFER_SIZE = 4

DEFAULT_CACHE_SIZE = 1024        # bytes
DEFAULT_BLOCK_SIZE = 8           # bytes
DEFAULT_CACHE_HIT_LATENCY = 1    # cycles
DEFAULT_CACHE_MISS_PENALTY = 10  # cycles

NUM_INTEGER_REGISTERS = 32
NUM_FP_REGISTERS = 32
MEMORY_SIZE = 65536              # 64 KiB

INT64_MAX = (1 << 63) - 1
INT64_MIN = -(1 << 63)

# ─────────────────────────────────────────────────────────────────────────────
# Utility helpers
# ─────────────────────────────────────────────────────────────────────────────

_PACK_FORMAT = {4: "<I", 8: "<Q"}


def to_int64(value: float) -> int:
    """Truncate toward zero into a signed 64-bit integer (NaN -> 0, saturating)."""
    if value != value:
        return 0
    if value >= 2.0 ** 63:
        return INT64_MAX
    if value <= -2.0 ** 63:
        return INT64_MIN
    return int(value)


def encode_value(value: float, size: int) -> bytes:
    """Little-endian integer image of *value*, keeping the low *size* bytes."""
    raw = to_int64(value) & ((1 << (8 * size)) - 1)
    return struct.pack(_PACK_FORMAT[size], raw)


def decode_value(data: bytes, size: int) -> float:
    """Inverse of encode_value: read *size* bytes as an unsigned integer."""
    chunk = bytes(data[:size]).ljust(size, b"\x00")
    return float(struct.unpack(_PACK_FORMAT[size], chunk)[0])

# ─────────────────────────────────────────────────────────────────────────────
# Instruction set
# ─────────────────────────────────────────────────────────────────────────────

class Category(Enum):
    """Functional-unit class of an opcode."""

    FP_ADD_SUB = "FP add/sub"
    FP_MUL_DIV = "FP mul/div"
    INTEGER_ALU = "Integer ALU"
    LOAD = "Load"
    STORE = "Store"
    BRANCH = "Branch"


class Opcode(Enum):
    """Supported opcodes: (mnemonic, category, default latency, access size)."""

    # Floating point, double precision
    ADD_D = ("ADD.D", Category.FP_ADD_SUB, 2, 0)
    SUB_D = ("SUB.D", Category.FP_ADD_SUB, 2, 0)
    MUL_D = ("MUL.D", Category.FP_MUL_DIV, 10, 0)
    DIV_D = ("DIV.D", Category.FP_MUL_DIV, 40, 0)

    # Floating point, single precision
    ADD_S = ("ADD.S", Category.FP_ADD_SUB, 2, 0)
    SUB_S = ("SUB.S", Category.FP_ADD_SUB, 2, 0)
    MUL_S = ("MUL.S", Category.FP_MUL_DIV, 10, 0)
    DIV_S = ("DIV.S", Category.FP_MUL_DIV, 40, 0)

    # Integer immediates
    ADDI = ("ADDI", Category.INTEGER_ALU, 1, 0)
    DADDI = ("DADDI", Category.INTEGER_ALU, 1, 0)
    SUBI = ("SUBI", Category.INTEGER_ALU, 1, 0)
    DSUBI = ("DSUBI", Category.INTEGER_ALU, 1, 0)

    # Loads
    L_D = ("L.D", Category.LOAD, 2, 8)
    L_S = ("L.S", Category.LOAD, 2, 4)
    LW = ("LW", Category.LOAD, 2, 4)
    LD = ("LD", Category.LOAD, 2, 8)

    # Stores
    S_D = ("S.D", Category.STORE, 2, 8)
    S_S = ("S.S", Category.STORE, 2, 4)
    SW = ("SW", Category.STORE, 2, 4)
    SD = ("SD", Category.STORE, 2, 8)

    # Branches
    BEQ = ("BEQ", Category.BRANCH, 1, 0)
    BNE = ("BNE", Category.BRANCH, 1, 0)

    def __init__(self, mnemonic: str, category: Category,
                 default_latency: int, access_size: int):
        self.mnemonic = mnemonic
        self.category = category
        self.default_latency = default_latency
        self.access_size = access_size

    @classmethod
    def from_mnemonic(cls, text: str) -> Optional["Opcode"]:
        wanted = text.strip().upper()
        for op in cls:
            if op.mnemonic == wanted:
                return op
        return None


class Instruction:
    """
    One static program instruction, or one dynamic (issued) copy of it.

    The four cycle stamps start at -1 and are filled in, once each, as the
    dynamic copy moves through issue, execute start, execute end and
    write-back.
    """

    __slots__ = ("opcode", "dest", "src1", "src2", "base", "immediate",
                 "address", "label", "issue_cycle", "execute_start_cycle",
                 "execute_end_cycle", "write_back_cycle", "completed")

    def __init__(self, opcode: Opcode, dest: Optional[str] = None,
                 src1: Optional[str] = None, src2: Optional[str] = None,
                 base: Optional[str] = None, immediate: int = 0,
                 address: int = 0, label: Optional[str] = None):
        self.opcode    = opcode
        self.dest      = dest
        self.src1      = src1
        self.src2      = src2
        self.base      = base
        self.immediate = immediate
        self.address   = address
        self.label     = label
        self.issue_cycle = -1
        self.execute_start_cycle = -1
        self.execute_end_cycle = -1
        self.write_back_cycle = -1
        self.completed = False

    @property
    def category(self) -> Category:
        return self.opcode.category

    @property
    def mnemonic(self) -> str:
        return self.opcode.mnemonic

    def copy(self) -> "Instruction":
        """Fresh dynamic copy: same operands, cycle stamps unset."""
        return Instruction(self.opcode, self.dest, self.src1, self.src2,
                           self.base, self.immediate, self.address, self.label)

    def __str__(self):
        cat = self.category
        if cat is Category.FP_ADD_SUB or cat is Category.FP_MUL_DIV:
            args = f"{self.dest}, {self.src1}, {self.src2}"
        elif cat is Category.INTEGER_ALU:
            args = f"{self.dest}, {self.src1}, {self.immediate}"
        elif cat is Category.LOAD:
            args = f"{self.dest}, {self.immediate}({self.base})"
        elif cat is Category.STORE:
            args = f"{self.src1}, {self.immediate}({self.base})"
        else:
            target = self.label if self.label is not None else self.immediate
            args = f"{self.src1}, {self.src2}, {target}"
        return f"{self.mnemonic} {args}"

    def __repr__(self):
        return (f"Instruction({self}, addr={self.address}, "
                f"issue={self.issue_cycle}, start={self.execute_start_cycle}, "
                f"end={self.execute_end_cycle}, wb={self.write_back_cycle})")

# ─────────────────────────────────────────────────────────────────────────────
# Operand slots (value-or-tag)
# ─────────────────────────────────────────────────────────────────────────────

class Ready:
    """A resolved operand value."""

    __slots__ = ("value",)

    def __init__(self, value: float):
        self.value = value

    def __eq__(self, other):
        return isinstance(other, Ready) and other.value == self.value

    def __repr__(self):
        return f"Ready({self.value})"


class Pending:
    """An operand still waiting on the station in *slot*."""

    __slots__ = ("slot",)

    def __init__(self, slot: int):
        self.slot = slot

    def __eq__(self, other):
        return isinstance(other, Pending) and other.slot == self.slot

    def __repr__(self):
        return f"Pending({self.slot})"

# ─────────────────────────────────────────────────────────────────────────────
# Register file
# ─────────────────────────────────────────────────────────────────────────────

class RegisterFile:
    """
    Integer (R0-R31) and floating-point (F0-F31) registers.

    Every value is held as a float. A register may carry one producer tag,
    the slot index of the reservation station that will write it next.
    R0 is hard-wired to zero and never tagged. Unknown names read as 0 and
    ignore writes.
    """

    _NAME = re.compile(r"^([RF])(\d+)$")

    def __init__(self):
        self.int_values: List[float] = [0.0] * NUM_INTEGER_REGISTERS
        self.fp_values: List[float] = [0.0] * NUM_FP_REGISTERS
        self.int_tags: List[Optional[int]] = [None] * NUM_INTEGER_REGISTERS
        self.fp_tags: List[Optional[int]] = [None] * NUM_FP_REGISTERS

    def _locate(self, name: Optional[str]
                ) -> Optional[Tuple[List[float], List[Optional[int]], int]]:
        if not name:
            return None
        m = self._NAME.match(name.strip().upper())
        if not m:
            return None
        idx = int(m.group(2))
        if m.group(1) == "R":
            if idx >= NUM_INTEGER_REGISTERS:
                return None
            return self.int_values, self.int_tags, idx
        if idx >= NUM_FP_REGISTERS:
            return None
        return self.fp_values, self.fp_tags, idx

    def is_zero_register(self, name: Optional[str]) -> bool:
        """R0 under any spelling (R0, r00, R000)."""
        loc = self._locate(name)
        return loc is not None and loc[0] is self.int_values and loc[2] == 0

    def get_value(self, name: Optional[str]) -> float:
        loc = self._locate(name)
        if loc is None:
            return 0.0
        values, _, idx = loc
        return values[idx]

    def set_value(self, name: Optional[str], value: float):
        loc = self._locate(name)
        if loc is None or self.is_zero_register(name):
            return
        values, _, idx = loc
        values[idx] = float(value)

    def get_tag(self, name: Optional[str]) -> Optional[int]:
        loc = self._locate(name)
        if loc is None:
            return None
        _, tags, idx = loc
        return tags[idx]

    def set_tag(self, name: Optional[str], producer: int):
        loc = self._locate(name)
        if loc is None or self.is_zero_register(name):
            return
        _, tags, idx = loc
        tags[idx] = producer

    def clear_tag(self, name: Optional[str], producer: int) -> bool:
        """Drop the tag only if *producer* still owns it. Returns True if cleared."""
        loc = self._locate(name)
        if loc is None:
            return False
        _, tags, idx = loc
        if tags[idx] != producer:
            return False
        tags[idx] = None
        return True

    def preload(self, name: str, value: float):
        self.set_value(name, value)

    def reset(self):
        for i in range(NUM_INTEGER_REGISTERS):
            self.int_values[i] = 0.0
            self.int_tags[i] = None
        for i in range(NUM_FP_REGISTERS):
            self.fp_values[i] = 0.0
            self.fp_tags[i] = None

    def integer_registers(self) -> Dict[str, float]:
        return {f"R{i}": v for i, v in enumerate(self.int_values)}

    def fp_registers(self) -> Dict[str, float]:
        return {f"F{i}": v for i, v in enumerate(self.fp_values)}

    def tags(self) -> Dict[str, int]:
        """Currently tagged registers, name -> producer slot."""
        out = {}
        for prefix, tags in (("R", self.int_tags), ("F", self.fp_tags)):
            for i, tag in enumerate(tags):
                if tag is not None:
                    out[f"{prefix}{i}"] = tag
        return out

# ─────────────────────────────────────────────────────────────────────────────
# Direct-mapped, write-back cache over flat memory
# ─────────────────────────────────────────────────────────────────────────────

class CacheBlock:
    __slots__ = ("data", "tag", "valid", "dirty", "base_address")

    def __init__(self, block_size: int):
        self.data = bytearray(block_size)
        self.tag = -1
        self.valid = False
        self.dirty = False
        # Start of the byte range this block covers. Refills start at the
        # missing address itself, so this is not a multiple of the block size.
        self.base_address = 0

    def covers(self, address: int, size: int) -> bool:
        return (self.valid and address >= self.base_address
                and address + size <= self.base_address + len(self.data))

    def clear(self):
        self.data = bytearray(len(self.data))
        self.tag = -1
        self.valid = False
        self.dirty = False
        self.base_address = 0


class CacheResult(NamedTuple):
    hit: bool
    latency: int
    data: Optional[bytes]


class Cache:
    """
    Direct-mapped, write-back, write-allocate cache.

    index = (address // block_size) % num_blocks. On a miss the resident
    block is written back if dirty, then refilled from memory starting
    exactly at the requested address. Memory survives reset(); use
    reset_memory() to clear it.
    """

    def __init__(self, cache_size: int = DEFAULT_CACHE_SIZE,
                 block_size: int = DEFAULT_BLOCK_SIZE,
                 hit_latency: int = DEFAULT_CACHE_HIT_LATENCY,
                 miss_penalty: int = DEFAULT_CACHE_MISS_PENALTY,
                 memory: Optional[bytearray] = None):
        self.cache_size = cache_size
        self.block_size = block_size
        self.num_blocks = max(1, cache_size // block_size)
        self.hit_latency = hit_latency
        self.miss_penalty = miss_penalty
        self.blocks: List[CacheBlock] = [
            CacheBlock(block_size) for _ in range(self.num_blocks)
        ]
        self.memory = memory if memory is not None else bytearray(MEMORY_SIZE)
        self.hits = 0
        self.misses = 0

    # ── Address arithmetic ──────────────────────────────────────────────

    def index_of(self, address: int) -> int:
        return (address // self.block_size) % self.num_blocks

    def tag_of(self, address: int) -> int:
        """Display-only tag: the block number above the index bits."""
        return (address // self.block_size) // self.num_blocks

    # ── Memory helpers ──────────────────────────────────────────────────

    def read_memory(self, address: int, size: int) -> bytes:
        """Raw memory read; bytes outside memory read as zero."""
        out = bytearray(size)
        for i in range(size):
            a = address + i
            if 0 <= a < len(self.memory):
                out[i] = self.memory[a]
        return bytes(out)

    def write_memory(self, address: int, data: bytes):
        """Raw memory write; bytes outside memory are dropped."""
        for i, b in enumerate(data):
            a = address + i
            if 0 <= a < len(self.memory):
                self.memory[a] = b

    def initialize_memory(self, address: int, value: float, size: int = 8):
        """Write *value* into memory as a little-endian integer of *size* bytes."""
        if not 0 <= address < len(self.memory):
            return
        self.write_memory(address, encode_value(value, size))

    def reset_memory(self):
        self.memory[:] = bytes(len(self.memory))

    # ── Cache operations ────────────────────────────────────────────────

    def _write_back_if_dirty(self, block: CacheBlock):
        if block.valid and block.dirty:
            self.write_memory(block.base_address, block.data)
            block.dirty = False

    def _refill(self, block: CacheBlock, address: int):
        self._write_back_if_dirty(block)
        block.data = bytearray(self.read_memory(address, self.block_size))
        block.tag = self.tag_of(address)
        block.base_address = address
        block.valid = True
        block.dirty = False

    def load(self, address: int, size: int) -> CacheResult:
        block = self.blocks[self.index_of(address)]
        if block.covers(address, size):
            self.hits += 1
            offset = address - block.base_address
            return CacheResult(True, self.hit_latency,
                               bytes(block.data[offset:offset + size]))

        self.misses += 1
        self._refill(block, address)
        data = bytes(block.data[:size]).ljust(size, b"\x00")
        return CacheResult(False, self.miss_penalty, data)

    def probe_store(self, address: int, size: int) -> CacheResult:
        """Price a store without touching cache state or statistics."""
        block = self.blocks[self.index_of(address)]
        if block.covers(address, size):
            return CacheResult(True, self.hit_latency, None)
        return CacheResult(False, self.miss_penalty, None)

    def store(self, address: int, data: bytes) -> CacheResult:
        """Write into the cache only; memory sees it when the block is evicted."""
        block = self.blocks[self.index_of(address)]
        hit = block.covers(address, len(data))
        if hit:
            self.hits += 1
        else:
            self.misses += 1
            self._refill(block, address)

        offset = address - block.base_address
        for i, b in enumerate(data):
            if offset + i < self.block_size:
                block.data[offset + i] = b
        block.dirty = True
        return CacheResult(hit, self.hit_latency if hit else self.miss_penalty, None)

    def peek(self, address: int, size: int) -> bytes:
        """Coherent read for display: cached bytes if resident, else memory."""
        block = self.blocks[self.index_of(address)]
        if block.covers(address, size):
            offset = address - block.base_address
            return bytes(block.data[offset:offset + size])
        return self.read_memory(address, size)

    @property
    def hit_rate(self) -> float:
        total = self.hits + self.misses
        return self.hits / total if total else 0.0

    def reset(self):
        for block in self.blocks:
            block.clear()
        self.hits = 0
        self.misses = 0

# ─────────────────────────────────────────────────────────────────────────────
# Reservation stations
# ─────────────────────────────────────────────────────────────────────────────

class CompletionGroup:
    """
    Stations whose execution ended in the same cycle and became ready to
    write back together. The result bus retires them one per cycle; until
    every member has retired, consumers of an already-retired member wait.
    """

    __slots__ = ("end_cycle", "members")

    def __init__(self, end_cycle: int):
        self.end_cycle = end_cycle
        self.members: Dict[int, bool] = {}   # slot -> retired

    def add(self, slot: int):
        self.members.setdefault(slot, False)

    def retire(self, slot: int):
        if slot in self.members:
            self.members[slot] = True

    @property
    def complete(self) -> bool:
        return all(self.members.values())

    def __repr__(self):
        return f"CompletionGroup(end={self.end_cycle}, members={self.members})"


class ReservationStation:
    """One functional-unit slot holding at most one in-flight instruction."""

    __slots__ = ("slot", "name", "category", "busy", "instruction", "j", "k",
                 "dest", "cycles_remaining", "issue_cycle", "group",
                 "waiting_on")

    def __init__(self, slot: int, name: str, category: Category):
        self.slot = slot
        self.name = name
        self.category = category
        self.clear()

    def clear(self):
        self.busy = False
        self.instruction: Optional[Instruction] = None
        self.j: Optional[object] = None      # Ready | Pending | None
        self.k: Optional[object] = None
        self.dest: Optional[str] = None
        self.cycles_remaining = 0
        self.issue_cycle = -1
        self.group: Optional[CompletionGroup] = None
        self.waiting_on: List[CompletionGroup] = []

    @property
    def operation(self) -> Optional[str]:
        return self.instruction.mnemonic if self.instruction else None

    def operands_ready(self) -> bool:
        return not isinstance(self.j, Pending) and not isinstance(self.k, Pending)

    def decrement_cycles(self):
        if self.cycles_remaining > 0:
            self.cycles_remaining -= 1

    def __repr__(self):
        if not self.busy:
            return f"{self.name}: Empty"
        return (f"{self.name}: Op={self.operation}, j={self.j}, k={self.k}, "
                f"Dest={self.dest}, Cycles={self.cycles_remaining}")


# Station pools, in slot order. Branches share the integer ALU pool.
_POOL_PREFIX = (
    (Category.FP_ADD_SUB, "Add"),
    (Category.FP_MUL_DIV, "Mult"),
    (Category.INTEGER_ALU, "Int"),
    (Category.LOAD, "Load"),
    (Category.STORE, "Store"),
)


def pool_category(category: Category) -> Category:
    if category is Category.BRANCH:
        return Category.INTEGER_ALU
    return category


class ReservationStationManager:
    """Owns the station pools, the latency table and the broadcast protocol."""

    def __init__(self, fp_add_sub: int = DEFAULT_FP_ADD_SUB_STATIONS,
                 fp_mul_div: int = DEFAULT_FP_MUL_DIV_STATIONS,
                 integer_alu: int = DEFAULT_INTEGER_ALU_STATIONS,
                 load: int = DEFAULT_LOAD_STATIONS,
                 store: int = DEFAULT_STORE_STATIONS):
        self.stations: List[ReservationStation] = []
        self.pools: Dict[Category, List[ReservationStation]] = {}
        self.latencies: Dict[str, int] = {
            op.mnemonic: op.default_latency for op in Opcode
        }
        self.initialize_stations(fp_add_sub, fp_mul_div, integer_alu, load, store)

    def initialize_stations(self, fp_add_sub: int, fp_mul_div: int,
                            integer_alu: int, load: int, store: int):
        sizes = (fp_add_sub, fp_mul_div, integer_alu, load, store)
        self.stations = []
        self.pools = {}
        for (category, prefix), count in zip(_POOL_PREFIX, sizes):
            pool = []
            for i in range(count):
                rs = ReservationStation(len(self.stations), f"{prefix}{i + 1}",
                                        category)
                self.stations.append(rs)
                pool.append(rs)
            self.pools[category] = pool

    # ── Latency table ───────────────────────────────────────────────────

    def set_latency(self, mnemonic: str, latency: int):
        self.latencies[mnemonic.strip().upper()] = latency

    def get_latency(self, opcode: Opcode) -> int:
        return self.latencies.get(opcode.mnemonic, opcode.default_latency)

    # ── Lookup ──────────────────────────────────────────────────────────

    def all_stations(self) -> List[ReservationStation]:
        return self.stations

    def station(self, slot: int) -> ReservationStation:
        return self.stations[slot]

    def name_of(self, slot: Optional[int]) -> str:
        if slot is None or not 0 <= slot < len(self.stations):
            return ""
        return self.stations[slot].name

    def stations_for(self, opcode: Opcode) -> List[ReservationStation]:
        return self.pools.get(pool_category(opcode.category), [])

    def find_available_station(self, opcode: Opcode) -> Optional[ReservationStation]:
        for rs in self.stations_for(opcode):
            if not rs.busy:
                return rs
        return None

    # ── Result broadcast ────────────────────────────────────────────────

    def update_operands(self, producer: int, value: float) -> List[ReservationStation]:
        """
        Forward *producer*'s result to every operand slot waiting on it.

        A load's j slot and a store's k slot wait on a base register, so the
        forwarded value is turned into an effective address (base + imm)
        rather than stored raw. Returns the stations that consumed the value.
        """
        consumers = []
        for rs in self.stations:
            if not rs.busy:
                continue
            touched = False
            if isinstance(rs.j, Pending) and rs.j.slot == producer:
                if rs.category is Category.LOAD:
                    rs.j = Ready(to_int64(value) + rs.instruction.immediate)
                else:
                    rs.j = Ready(value)
                touched = True
            if isinstance(rs.k, Pending) and rs.k.slot == producer:
                if rs.category is Category.STORE:
                    rs.k = Ready(to_int64(value) + rs.instruction.immediate)
                else:
                    rs.k = Ready(value)
                touched = True
            if touched:
                consumers.append(rs)
        return consumers

    def tick(self):
        for rs in self.stations:
            if rs.busy and rs.cycles_remaining > 0:
                rs.decrement_cycles()

    def reset(self):
        for rs in self.stations:
            rs.clear()

# ─────────────────────────────────────────────────────────────────────────────
# Load/store buffer
# ─────────────────────────────────────────────────────────────────────────────

class AccessKind(Enum):
    LOAD = "LOAD"
    STORE = "STORE"


class LoadStoreEntry:
    __slots__ = ("kind", "slot", "instruction", "address", "size", "value",
                 "load_data", "issue_cycle", "cycles_remaining", "completed")

    def __init__(self, kind: AccessKind, slot: int, instruction: Instruction):
        self.kind = kind
        self.slot = slot
        self.instruction = instruction
        self.address: Optional[int] = None   # unknown until the base resolves
        self.size = instruction.opcode.access_size
        self.value = 0.0
        self.load_data: Optional[bytes] = None
        self.issue_cycle = instruction.issue_cycle
        self.cycles_remaining = 0
        self.completed = False

    @property
    def address_known(self) -> bool:
        return self.address is not None

    def __repr__(self):
        addr = self.address if self.address_known else "?"
        return (f"LSB({self.kind.value} slot={self.slot} addr={addr} "
                f"size={self.size} issue={self.issue_cycle} "
                f"cycles={self.cycles_remaining})")


class LoadStoreBuffer:
    """
    In-flight memory operations, kept in issue order.

    Both clash checks are conservative: an earlier entry whose address is
    still unknown counts as a clash for any STORE, and for a LOAD only when
    that earlier entry is a STORE.
    """

    def __init__(self, max_size: int = DEFAULT_LOAD_STORE_BUFFER_SIZE):
        self.max_size = max_size
        self.entries: List[LoadStoreEntry] = []

    def is_full(self) -> bool:
        return len(self.entries) >= self.max_size

    def is_empty(self) -> bool:
        return not self.entries

    def reserve(self, instruction: Instruction, slot: int) -> LoadStoreEntry:
        kind = (AccessKind.LOAD if instruction.category is Category.LOAD
                else AccessKind.STORE)
        entry = LoadStoreEntry(kind, slot, instruction)
        self.entries.append(entry)
        return entry

    def entry_for(self, slot: int) -> Optional[LoadStoreEntry]:
        for entry in self.entries:
            if entry.slot == slot:
                return entry
        return None

    def resolve_load_address(self, slot: int, address: int) -> Optional[LoadStoreEntry]:
        entry = self.entry_for(slot)
        if entry is not None:
            entry.address = address
        return entry

    def resolve_store(self, slot: int, address: int, value: float
                      ) -> Optional[LoadStoreEntry]:
        entry = self.entry_for(slot)
        if entry is not None:
            entry.address = address
            entry.value = value
        return entry

    def remove(self, entry: LoadStoreEntry):
        entry.completed = True
        if entry in self.entries:
            self.entries.remove(entry)

    def tick(self):
        for entry in self.entries:
            if entry.cycles_remaining > 0:
                entry.cycles_remaining -= 1

    def reset(self):
        self.entries = []

    # ── Hazard detection ────────────────────────────────────────────────

    @staticmethod
    def overlaps(start: int, size: int, other_start: int, other_size: int) -> bool:
        """True if [start, start+size) and [other_start, other_start+other_size) intersect."""
        end = start + size
        other_end = other_start + other_size
        return ((other_start <= start < other_end)        # starts inside
                or (other_start < end <= other_end)      # ends inside
                or (start <= other_start and end >= other_end)  # contains
                or (start <= other_start < end))         # other starts inside

    @classmethod
    def _blocks(cls, earlier: LoadStoreEntry, address: int, size: int,
                kind: AccessKind) -> bool:
        if earlier.completed:
            return False
        if not earlier.address_known:
            if kind is AccessKind.STORE:
                return True
            return earlier.kind is AccessKind.STORE
        return cls.overlaps(address, size, earlier.address, earlier.size)

    def has_address_clash_at_issue(self, address: int, size: int,
                                   kind: AccessKind, issue_cycle: int) -> bool:
        """Check an instruction not yet in the buffer against everything issued before it."""
        for entry in self.entries:
            if entry.issue_cycle >= issue_cycle:
                continue
            if self._blocks(entry, address, size, kind):
                return True
        return False

    def has_address_clash(self, address: int, size: int,
                          own: LoadStoreEntry, kind: AccessKind) -> bool:
        """Re-check an in-flight entry against the other, earlier entries."""
        for entry in self.entries:
            if entry is own or entry.issue_cycle > own.issue_cycle:
                continue
            if self._blocks(entry, address, size, kind):
                return True
        return False

# ─────────────────────────────────────────────────────────────────────────────
# Branch unit
# ─────────────────────────────────────────────────────────────────────────────

class BranchUnit:
    """
    Bookkeeping for the single in-flight branch. The outcome recorded at
    issue is provisional; the simulator re-evaluates against live register
    values at write-back and records the final result with resolve().
    """

    def __init__(self):
        self.reset()

    def reset(self):
        self.current: Optional[Instruction] = None
        self.resolved = True
        self.taken = False
        self.target_address = -1

    @property
    def is_processing(self) -> bool:
        return self.current is not None and not self.resolved

    @staticmethod
    def evaluate(opcode: Opcode, a: float, b: float) -> bool:
        if opcode is Opcode.BEQ:
            return a == b
        return a != b

    @staticmethod
    def target_of(branch: Instruction) -> int:
        return branch.address + 4 + branch.immediate * 4

    def start(self, branch: Instruction, a: float, b: float):
        self.current = branch
        self.resolved = False
        self.taken = self.evaluate(branch.opcode, a, b)
        if self.taken:
            self.target_address = self.target_of(branch)
        else:
            self.target_address = branch.address + 4

    def resolve(self, taken: bool, target_address: int):
        self.taken = taken
        self.target_address = target_address
        self.resolved = True

# ─────────────────────────────────────────────────────────────────────────────
# Execution state
# ─────────────────────────────────────────────────────────────────────────────

class ExecutionState:
    """Cycle counter, program counter, dynamic trace and event log."""

    def __init__(self):
        self.program: List[Instruction] = []
        self.reset()

    def reset(self):
        self.cycle = 0
        self.pc = 0                            # index into program
        self.trace: List[Instruction] = []     # one copy per successful issue
        self.log: List[str] = []
        self.complete = False
        self.status = "Ready"

    @property
    def at_end(self) -> bool:
        return self.pc >= len(self.program)

# ─────────────────────────────────────────────────────────────────────────────
# Tomasulo simulator (orchestrator)
# ─────────────────────────────────────────────────────────────────────────────

_COMPUTE = (Category.FP_ADD_SUB, Category.FP_MUL_DIV, Category.INTEGER_ALU,
            Category.BRANCH)


class TomasuloSimulator:
    """
    Single-issue, single-write-back Tomasulo machine. Each step() runs one
    clock through the fixed stage order:

        execute -> issue -> write-back -> tick -> execution end -> completion

    Issue is suspended while a branch is outstanding; nothing is speculated.
    """

    def __init__(self, cache_size: int = DEFAULT_CACHE_SIZE,
                 block_size: int = DEFAULT_BLOCK_SIZE,
                 hit_latency: int = DEFAULT_CACHE_HIT_LATENCY,
                 miss_penalty: int = DEFAULT_CACHE_MISS_PENALTY,
                 lsb_size: int = DEFAULT_LOAD_STORE_BUFFER_SIZE,
                 verbose: bool = False):
        self.registers = RegisterFile()
        self.cache = Cache(cache_size, block_size, hit_latency, miss_penalty)
        self.stations = ReservationStationManager()
        self.load_store_buffer = LoadStoreBuffer(lsb_size)
        self.branch_unit = BranchUnit()
        self.state = ExecutionState()
        self.register_presets: Dict[str, float] = {}
        self.verbose = verbose
        self._lock = threading.RLock()
        self._reset_runtime()

    def _reset_runtime(self):
        self.hazard_stalls = 0       # issue attempts refused by a data/memory hazard
        self.structural_stalls = 0   # issue attempts with no free station/buffer slot
        self.branch_stall_cycles = 0

    # ── Program & configuration ─────────────────────────────────────────

    @property
    def program(self) -> List[Instruction]:
        return self.state.program

    @property
    def log(self) -> List[str]:
        return self.state.log

    @property
    def is_complete(self) -> bool:
        return self.state.complete

    @property
    def branch_stall(self) -> bool:
        """Issue is suspended while the branch unit holds an unresolved branch."""
        return self.branch_unit.is_processing

    def load_program(self, instructions: List[Instruction]):
        """Install a new program and reset all run state."""
        with self._lock:
            self.state.program = list(instructions)
            self.reset()

    def reset(self):
        """Back to cycle 0. Memory contents and register presets survive."""
        with self._lock:
            self.stations.reset()
            self.registers.reset()
            for name, value in self.register_presets.items():
                self.registers.set_value(name, value)
            self.cache.reset()
            self.load_store_buffer.reset()
            self.branch_unit.reset()
            self.state.reset()
            self._reset_runtime()

    def initialize_stations(self, fp_add_sub: int, fp_mul_div: int,
                            integer_alu: int, load: int, store: int):
        with self._lock:
            self.stations.initialize_stations(fp_add_sub, fp_mul_div,
                                              integer_alu, load, store)
            self.reset()

    def set_instruction_latency(self, mnemonic: str, latency: int):
        self.stations.set_latency(mnemonic, latency)

    def configure_cache(self, cache_size: int, block_size: int,
                        hit_latency: int, miss_penalty: int):
        """Rebuild the cache geometry. Memory contents are carried over."""
        with self._lock:
            self.cache = Cache(cache_size, block_size, hit_latency,
                               miss_penalty, memory=self.cache.memory)
            self.reset()

    def configure_load_store_buffer(self, size: int):
        with self._lock:
            self.load_store_buffer = LoadStoreBuffer(size)
            self.reset()

    def preload_register(self, name: str, value: float):
        """Set a register now and again after every reset."""
        self.register_presets[name.strip().upper()] = float(value)
        self.registers.set_value(name, value)

    def clear_register_presets(self):
        self.register_presets.clear()

    def initialize_memory(self, address: int, value: float, size: int = 8):
        self.cache.initialize_memory(address, value, size)

    def reset_memory(self):
        self.cache.reset_memory()

    # ── Main cycle ──────────────────────────────────────────────────────

    def step(self) -> bool:
        """Advance one clock cycle. Returns False if the run had already finished."""
        with self._lock:
            if self.state.complete:
                return False

            self.state.cycle += 1
            self.state.status = f"Cycle {self.state.cycle}"

            self._execute()
            if self.branch_stall:
                self.branch_stall_cycles += 1
            else:
                self._issue()
            self._write_back()
            self.stations.tick()
            self.load_store_buffer.tick()
            self._detect_execution_end()
            self._check_completion()

            if self.verbose:
                self._print_state()
            return True

    def run(self, max_cycles: int = 10000) -> int:
        """Step until complete or *max_cycles* cycles have run. Returns cycles run."""
        ran = 0
        while ran < max_cycles and self.step():
            ran += 1
        return ran

    def _log(self, message: str):
        self.state.log.append(f"Cycle {self.state.cycle}: {message}")

    # ── Stage 1: execute ────────────────────────────────────────────────

    def _waiting_on_group(self, rs: ReservationStation) -> bool:
        """True while an operand came from a completion group not yet fully retired."""
        rs.waiting_on = [g for g in rs.waiting_on if not g.complete]
        return bool(rs.waiting_on)

    def _execute(self):
        for rs in self.stations.all_stations():
            inst = rs.instruction
            if not rs.busy or inst is None or inst.execute_start_cycle != -1:
                continue
            if not rs.operands_ready():
                continue

            category = inst.category
            if category is Category.LOAD:
                self._start_load(rs)
            elif category is Category.STORE:
                self._start_store(rs)
            elif category in _COMPUTE:
                if not self._waiting_on_group(rs):
                    self._start_compute(rs)
            else:
                raise ValueError(f"unhandled category {category}")

    def _start_compute(self, rs: ReservationStation):
        inst = rs.instruction
        inst.execute_start_cycle = self.state.cycle
        rs.cycles_remaining = self.stations.get_latency(inst.opcode)
        self._log(f"Started execution of {inst}")

    def _start_load(self, rs: ReservationStation):
        inst = rs.instruction
        address = to_int64(rs.j.value)
        entry = self.load_store_buffer.resolve_load_address(rs.slot, address)
        if self._waiting_on_group(rs):
            return
        size = inst.opcode.access_size
        if self.load_store_buffer.has_address_clash(address, size, entry,
                                                    AccessKind.LOAD):
            return

        inst.execute_start_cycle = self.state.cycle
        result = self.cache.load(address, size)
        total = self.stations.get_latency(inst.opcode) + result.latency
        entry.cycles_remaining = total
        entry.load_data = result.data
        rs.cycles_remaining = total
        self._log(f"Started execution of {inst} "
                  f"(cache {'hit' if result.hit else 'miss'} @ {address})")

    def _start_store(self, rs: ReservationStation):
        inst = rs.instruction
        address = to_int64(rs.k.value)
        entry = self.load_store_buffer.resolve_store(rs.slot, address, rs.j.value)
        if self._waiting_on_group(rs):
            return
        size = inst.opcode.access_size
        if self.load_store_buffer.has_address_clash(address, size, entry,
                                                    AccessKind.STORE):
            return

        inst.execute_start_cycle = self.state.cycle
        # Price the access only; the cache is written when execution ends.
        result = self.cache.probe_store(address, size)
        total = self.stations.get_latency(inst.opcode) + result.latency
        entry.cycles_remaining = total
        rs.cycles_remaining = total
        self._log(f"Started execution of {inst} "
                  f"(cache {'hit' if result.hit else 'miss'} @ {address})")

    # ── Stage 2: issue ──────────────────────────────────────────────────

    def _read_operand(self, name: Optional[str]):
        tag = self.registers.get_tag(name)
        if tag is None:
            return Ready(self.registers.get_value(name))
        return Pending(tag)

    def _occupy(self, rs: ReservationStation, inst: Instruction, j, k,
                dest: Optional[str]):
        rs.busy = True
        rs.instruction = inst
        rs.j = j
        rs.k = k
        rs.dest = dest
        rs.cycles_remaining = 0
        rs.issue_cycle = inst.issue_cycle
        rs.group = None
        rs.waiting_on = []
        self._log(f"Issued {inst} to {rs.name}")

    def _issue(self):
        state = self.state
        if state.at_end:
            return

        inst = state.program[state.pc].copy()
        inst.issue_cycle = state.cycle
        rs = self.stations.find_available_station(inst.opcode)
        if rs is None:
            self.structural_stalls += 1
            return

        category = inst.category
        if category is Category.BRANCH:
            issued = self._issue_branch(inst, rs)
        elif category is Category.FP_ADD_SUB or category is Category.FP_MUL_DIV:
            issued = self._issue_fp(inst, rs)
        elif category is Category.INTEGER_ALU:
            issued = self._issue_integer(inst, rs)
        elif category is Category.LOAD:
            issued = self._issue_load(inst, rs)
        elif category is Category.STORE:
            issued = self._issue_store(inst, rs)
        else:
            raise ValueError(f"unhandled category {category}")

        if issued:
            state.trace.append(inst)
            state.pc += 1

    def _issue_fp(self, inst: Instruction, rs: ReservationStation) -> bool:
        j = self._read_operand(inst.src1)
        k = self._read_operand(inst.src2)
        self._occupy(rs, inst, j, k, inst.dest)
        self.registers.set_tag(inst.dest, rs.slot)
        return True

    def _issue_integer(self, inst: Instruction, rs: ReservationStation) -> bool:
        j = self._read_operand(inst.src1)
        self._occupy(rs, inst, j, Ready(float(inst.immediate)), inst.dest)
        self.registers.set_tag(inst.dest, rs.slot)
        return True

    def _issue_load(self, inst: Instruction, rs: ReservationStation) -> bool:
        lsb = self.load_store_buffer
        if lsb.is_full():
            self.structural_stalls += 1
            return False

        base = self._read_operand(inst.base)
        if isinstance(base, Ready):
            address = to_int64(base.value) + inst.immediate
            if lsb.has_address_clash_at_issue(address, inst.opcode.access_size,
                                              AccessKind.LOAD, inst.issue_cycle):
                self.hazard_stalls += 1
                return False
            base = Ready(address)

        self._occupy(rs, inst, base, None, inst.dest)
        self.registers.set_tag(inst.dest, rs.slot)
        lsb.reserve(inst, rs.slot)
        return True

    def _issue_store(self, inst: Instruction, rs: ReservationStation) -> bool:
        lsb = self.load_store_buffer
        if lsb.is_full():
            self.structural_stalls += 1
            return False

        value = self._read_operand(inst.src1)
        base = self._read_operand(inst.base)
        if isinstance(base, Ready):
            address = to_int64(base.value) + inst.immediate
            if lsb.has_address_clash_at_issue(address, inst.opcode.access_size,
                                              AccessKind.STORE, inst.issue_cycle):
                self.hazard_stalls += 1
                return False
            base = Ready(address)

        self._occupy(rs, inst, value, base, None)
        lsb.reserve(inst, rs.slot)
        return True

    def _issue_branch(self, inst: Instruction, rs: ReservationStation) -> bool:
        # Branch operands are never renamed: both sources must already be final.
        if (self.registers.get_tag(inst.src1) is not None
                or self.registers.get_tag(inst.src2) is not None):
            self.hazard_stalls += 1
            return False

        a = self.registers.get_value(inst.src1)
        b = self.registers.get_value(inst.src2)
        self._occupy(rs, inst, Ready(a), Ready(b), None)
        self.branch_unit.start(inst, a, b)
        return True

    # ── Stage 3: write-back ─────────────────────────────────────────────

    def _collect_ready(self) -> List[ReservationStation]:
        return [rs for rs in self.stations.all_stations()
                if rs.busy and rs.cycles_remaining == 0
                and rs.instruction is not None
                and rs.instruction.execute_end_cycle != -1]

    @staticmethod
    def _form_groups(ready: List[ReservationStation]):
        by_end: Dict[int, List[ReservationStation]] = {}
        for rs in ready:
            by_end.setdefault(rs.instruction.execute_end_cycle, []).append(rs)
        for end_cycle, members in by_end.items():
            if len(members) < 2:
                continue
            group = next((rs.group for rs in members if rs.group is not None),
                         None) or CompletionGroup(end_cycle)
            for rs in members:
                group.add(rs.slot)
                rs.group = group

    def _write_back(self):
        ready = self._collect_ready()
        if not ready:
            return
        if len(ready) > 1:
            self._form_groups(ready)

        # One result bus: the oldest instruction wins.
        rs = min(ready, key=lambda s: s.instruction.issue_cycle)
        inst = rs.instruction
        group = rs.group
        if group is not None:
            group.retire(rs.slot)

        category = inst.category
        if category is Category.STORE:
            self._retire_memory_entry(rs)
            self._log(f"Store completed for {inst}")
        elif category is Category.BRANCH:
            self._resolve_branch(rs)
        elif category is Category.LOAD or category in _COMPUTE:
            result = self._compute_result(rs)
            self.registers.set_value(rs.dest, result)
            self.registers.clear_tag(rs.dest, rs.slot)
            consumers = self.stations.update_operands(rs.slot, result)
            if group is not None and not group.complete:
                for consumer in consumers:
                    consumer.waiting_on.append(group)
            if category is Category.LOAD:
                self._retire_memory_entry(rs)
            self._log(f"Write-back result {result} for {inst} to {rs.dest}")
        else:
            raise ValueError(f"unhandled category {category}")

        inst.write_back_cycle = self.state.cycle
        inst.completed = True
        rs.clear()

    def _retire_memory_entry(self, rs: ReservationStation):
        entry = self.load_store_buffer.entry_for(rs.slot)
        if entry is not None:
            self.load_store_buffer.remove(entry)

    def _compute_result(self, rs: ReservationStation) -> float:
        inst = rs.instruction
        op = inst.opcode
        if op.category is Category.LOAD:
            return float(rs.j.value)
        a = float(rs.j.value)
        if op.category is Category.INTEGER_ALU:
            if op is Opcode.ADDI or op is Opcode.DADDI:
                return a + inst.immediate
            return a - inst.immediate

        b = float(rs.k.value)
        if op is Opcode.ADD_D or op is Opcode.ADD_S:
            return a + b
        if op is Opcode.SUB_D or op is Opcode.SUB_S:
            return a - b
        if op is Opcode.MUL_D or op is Opcode.MUL_S:
            return a * b
        if op is Opcode.DIV_D or op is Opcode.DIV_S:
            return a / b if b != 0 else 0.0
        return 0.0

    def _resolve_branch(self, rs: ReservationStation):
        inst = rs.instruction
        # Live values: earlier producers may have retired since the branch issued.
        a = self.registers.get_value(inst.src1)
        b = self.registers.get_value(inst.src2)
        taken = BranchUnit.evaluate(inst.opcode, a, b)
        target = BranchUnit.target_of(inst) if taken else inst.address + 4
        self.branch_unit.resolve(taken, target)
        self._log(f"Branch evaluation at write-back: {inst} | "
                  f"{inst.src1}={a}, {inst.src2}={b} -> "
                  f"{'TAKEN' if taken else 'NOT TAKEN'}")
        if not taken:
            return

        index = self._locate_target(inst, target)
        if index is None:
            self._log(f"ERROR: Branch target address {target} not found - "
                      f"instruction pointer not updated")
            return
        self.state.pc = index
        self.state.complete = False
        self._log(f"Branch TAKEN: jumping to address {target} (index {index})")

    def _locate_target(self, branch: Instruction, target: int) -> Optional[int]:
        program = self.state.program
        for i, candidate in enumerate(program):
            if candidate.address == target:
                return i

        # Fall back to counting instructions from the branch itself.
        for i, candidate in enumerate(program):
            if (candidate.address == branch.address
                    and candidate.opcode is branch.opcode):
                index = i + branch.immediate + 1
                if 0 <= index < len(program):
                    return index
                return None
        return None

    # ── Stage 5: execution end ──────────────────────────────────────────

    def _detect_execution_end(self):
        for rs in self.stations.all_stations():
            inst = rs.instruction
            if not rs.busy or inst is None:
                continue
            if inst.execute_start_cycle == -1 or inst.execute_end_cycle != -1:
                continue
            if rs.cycles_remaining != 0:
                continue

            category = inst.category
            if category is Category.STORE:
                entry = self.load_store_buffer.entry_for(rs.slot)
                if entry.cycles_remaining != 0:
                    continue
                self.cache.store(entry.address,
                                 encode_value(entry.value, entry.size))

            inst.execute_end_cycle = self.state.cycle
            self._log(f"Completed execution of {inst}")

            if category is Category.LOAD:
                entry = self.load_store_buffer.entry_for(rs.slot)
                rs.j = Ready(decode_value(entry.load_data, entry.size))

    # ── Stage 6: completion ─────────────────────────────────────────────

    def _check_completion(self):
        state = self.state
        done = (state.at_end
                and all(inst.completed for inst in state.trace)
                and not any(rs.busy for rs in self.stations.all_stations())
                and self.load_store_buffer.is_empty())
        state.complete = done
        if done:
            state.status = f"Simulation Complete - Total Cycles: {state.cycle}"

    # ── Debug / display ─────────────────────────────────────────────────

    def _operand_columns(self, operand) -> Tuple[str, str]:
        if isinstance(operand, Ready):
            return f"{operand.value:g}", ""
        if isinstance(operand, Pending):
            return "", self.stations.name_of(operand.slot)
        return "", ""

    def _print_state(self):
        busy = ",".join(rs.name for rs in self.stations.all_stations() if rs.busy)
        print(f"  [Cycle {self.state.cycle:4d}]  PC={self.state.pc:<3d} "
              f"busy=[{busy}]  LSB={len(self.load_store_buffer.entries)}"
              f"{'  BRANCH-STALL' if self.branch_stall else ''}")

    def dump_registers(self):
        print("\n═══ Register File ═══")
        tags = self.registers.tags()
        for prefix, values in (("R", self.registers.int_values),
                               ("F", self.registers.fp_values)):
            for i in range(0, len(values), 4):
                cells = []
                for j in range(4):
                    name = f"{prefix}{i + j}"
                    cell = f"{name:<3s}={values[i + j]:>10g}"
                    if name in tags:
                        cell += f"<{self.stations.name_of(tags[name])}>"
                    cells.append(f"{cell:<22s}")
                print("  " + "".join(cells).rstrip())

    def dump_stations(self):
        print("\n═══ Reservation Stations ═══")
        print(f"  {'Name':<7s}{'Busy':<6s}{'Op':<7s}{'Vj':>10s}{'Vk':>10s}"
              f"  {'Qj':<7s}{'Qk':<7s}{'Dest':<6s}{'Cycles':>6s}")
        for rs in self.stations.all_stations():
            vj, qj = self._operand_columns(rs.j)
            vk, qk = self._operand_columns(rs.k)
            print(f"  {rs.name:<7s}{'yes' if rs.busy else 'no':<6s}"
                  f"{rs.operation or '':<7s}{vj:>10s}{vk:>10s}  "
                  f"{qj:<7s}{qk:<7s}{rs.dest or '':<6s}{rs.cycles_remaining:>6d}")

    def dump_load_store_buffer(self):
        print("\n═══ Load/Store Buffer ═══")
        if self.load_store_buffer.is_empty():
            print("  (empty)")
        for entry in self.load_store_buffer.entries:
            addr = str(entry.address) if entry.address_known else "?"
            print(f"  {entry.kind.value:<6s}{self.stations.name_of(entry.slot):<7s}"
                  f"addr={addr:<6s}size={entry.size}  issue={entry.issue_cycle:<4d}"
                  f"cycles={entry.cycles_remaining}")

    def dump_cache(self, limit: int = 32):
        print("\n═══ Cache (valid blocks) ═══")
        shown = 0
        for i, block in enumerate(self.cache.blocks):
            if not block.valid:
                continue
            print(f"  [{i:4d}] base={block.base_address:<6d} tag={block.tag:<4d}"
                  f"{' D' if block.dirty else '  '}  {block.data.hex()}")
            shown += 1
            if shown >= limit:
                print("  ... (truncated)")
                break
        if shown == 0:
            print("  (empty)")

    def dump_memory(self, limit: int = 32, word: int = 8):
        print("\n═══ Data Memory (non-zero words, cache-coherent view) ═══")
        count = 0
        for addr in range(0, len(self.cache.memory), word):
            data = self.cache.peek(addr, word)
            if any(data):
                print(f"  [{addr:6d}] = {decode_value(data, word):g}")
                count += 1
                if count >= limit:
                    print("  ... (truncated)")
                    break
        if count == 0:
            print("  (empty)")

    def dump_timing(self):
        print("\n═══ Instruction Timing ═══")
        print(f"  {'Instruction':<26s}{'Issue':>6s}{'Start':>7s}{'End':>6s}{'WB':>6s}")
        for inst in self.state.trace:
            print(f"  {str(inst):<26s}{inst.issue_cycle:>6d}"
                  f"{inst.execute_start_cycle:>7d}{inst.execute_end_cycle:>6d}"
                  f"{inst.write_back_cycle:>6d}")

    def dump_log(self):
        print("\n═══ Event Log ═══")
        for line in self.state.log:
            print(f"  {line}")

    def dump_stats(self):
        completed = sum(1 for inst in self.state.trace if inst.completed)
        print("\n═══ Simulation Statistics ═══")
        print(f"  Status:               {self.state.status}")
        print(f"  Total cycles:         {self.state.cycle}")
        print(f"  Instructions:         {completed}")
        if completed > 0:
            print(f"  CPI:                  {self.state.cycle / completed:.2f}")
        print(f"  Hazard stalls:        {self.hazard_stalls}")
        print(f"  Structural stalls:    {self.structural_stalls}")
        print(f"  Branch-stall cycles:  {self.branch_stall_cycles}")
        total_cache = self.cache.hits + self.cache.misses
        if total_cache > 0:
            print(f"  Cache hits / total:   {self.cache.hits}/{total_cache} "
                  f"({self.cache.hit_rate:.1%})")

# ─────────────────────────────────────────────────────────────────────────────
# Free-run driver
# ─────────────────────────────────────────────────────────────────────────────

class FreeRunner:
    """
    Calls sim.step() from a background thread every *interval* seconds until
    the run completes, *max_cycles* is reached or stop() is called. The stop
    request is honoured between cycles, never inside one.
    """

    def __init__(self, sim: TomasuloSimulator, interval: float = 0.5,
                 max_cycles: int = 10000,
                 on_step: Optional[Callable[[TomasuloSimulator], None]] = None):
        self.sim = sim
        self.interval = interval
        self.max_cycles = max_cycles
        self.on_step = on_step
        self.cycles_run = 0
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def start(self):
        self._stop.clear()
        self._thread = threading.Thread(target=self._loop, daemon=True)
        self._thread.start()

    def _loop(self):
        while not self._stop.is_set() and self.cycles_run < self.max_cycles:
            if not self.sim.step():
                break
            self.cycles_run += 1
            if self.on_step is not None:
                self.on_step(self.sim)
            if self._stop.wait(self.interval):
                break

    def stop(self):
        self._stop.set()

    def join(self, timeout: Optional[float] = None):
        if self._thread is not None:
            self._thread.join(timeout)

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

# ─────────────────────────────────────────────────────────────────────────────
# Assembler
# ─────────────────────────────────────────────────────────────────────────────

_REGISTER = re.compile(r"^[RF]\d+$")
_MEMORY_OPERAND = re.compile(r"^(-?\d+)\(([RF]\d+)\)$")


class ParseResult:
    """Output of parse_program: instructions plus what could not be used."""

    __slots__ = ("instructions", "labels", "skipped", "unresolved")

    def __init__(self):
        self.instructions: List[Instruction] = []
        self.labels: Dict[str, int] = {}                 # label -> byte address
        self.skipped: List[Tuple[int, str]] = []         # (line number, text)
        self.unresolved: List[Tuple[int, str]] = []      # (branch address, label)


def _parse_int(token: str) -> Optional[int]:
    try:
        return int(token, 0)
    except ValueError:
        return None


def _register(token: str) -> Optional[str]:
    token = token.upper()
    return token if _REGISTER.match(token) else None


def parse_instruction(text: str, address: int) -> Optional[Instruction]:
    """Parse one instruction (no label). Returns None if the line is malformed."""
    tokens = [t for t in re.split(r"[\s,]+", text.strip()) if t]
    if not tokens:
        return None
    opcode = Opcode.from_mnemonic(tokens[0])
    if opcode is None:
        return None
    args = tokens[1:]
    cat = opcode.category

    if cat is Category.FP_ADD_SUB or cat is Category.FP_MUL_DIV:
        if len(args) != 3:
            return None
        regs = [_register(a) for a in args]
        if None in regs:
            return None
        return Instruction(opcode, dest=regs[0], src1=regs[1], src2=regs[2],
                           address=address)

    if cat is Category.INTEGER_ALU:
        if len(args) != 3:
            return None
        dest, src, imm = _register(args[0]), _register(args[1]), _parse_int(args[2])
        if dest is None or src is None or imm is None:
            return None
        return Instruction(opcode, dest=dest, src1=src, immediate=imm,
                           address=address)

    if cat is Category.LOAD or cat is Category.STORE:
        if len(args) != 2:
            return None
        reg = _register(args[0])
        m = _MEMORY_OPERAND.match(args[1].upper())
        if reg is None or m is None:
            return None
        offset, base = int(m.group(1)), m.group(2)
        if cat is Category.LOAD:
            return Instruction(opcode, dest=reg, base=base, immediate=offset,
                               address=address)
        return Instruction(opcode, src1=reg, base=base, immediate=offset,
                           address=address)

    # Branch: the target stays symbolic until every label is known.
    if len(args) != 3:
        return None
    src1, src2 = _register(args[0]), _register(args[1])
    if src1 is None or src2 is None:
        return None
    return Instruction(opcode, src1=src1, src2=src2, address=address,
                       label=args[2])


def parse_program(text: str) -> ParseResult:
    """
    Assemble program text. One instruction per line, optional "label:"
    prefix, "#" comments. Lines that cannot be parsed are skipped and
    reported, and never shift the addresses of the lines after them.

    Branch targets become word offsets, (target - branch - 4) / 4. A target
    that is neither a known label nor an integer becomes offset 0.
    """
    result = ParseResult()
    for lineno, raw in enumerate(text.splitlines(), start=1):
        line = raw.split("#", 1)[0].strip()
        if not line:
            continue
        address = 4 * len(result.instructions)
        if ":" in line:
            label, line = line.split(":", 1)
            label, line = label.strip(), line.strip()
            if not label or re.search(r"\s", label):
                result.skipped.append((lineno, raw.strip()))
                continue
            result.labels[label] = address
            if not line:
                continue
        inst = parse_instruction(line, address)
        if inst is None:
            result.skipped.append((lineno, raw.strip()))
            continue
        result.instructions.append(inst)

    for inst in result.instructions:
        if inst.category is not Category.BRANCH:
            continue
        target = inst.label
        if target in result.labels:
            inst.immediate = (result.labels[target] - inst.address - 4) // 4
            continue
        offset = _parse_int(target)
        if offset is not None:
            inst.immediate = offset
        else:
            inst.immediate = 0
            result.unresolved.append((inst.address, target))
    return result

# ─────────────────────────────────────────────────────────────────────────────
# Demo program
# ─────────────────────────────────────────────────────────────────────────────

DEMO_PROGRAM = """\
# Scale a three-element vector of doubles in place: x[i] = x[i] * F2
        ADDI  R1, R0, 24       # R1 = byte offset of the last element
        ADDI  R2, R0, 0        # R2 = loop bound
LOOP:   L.D   F0, 0(R1)
        MUL.D F4, F0, F2
        S.D   F4, 0(R1)
        SUBI  R1, R1, 8
        BNE   R1, R2, LOOP
        ADD.D F6, F4, F4       # F6 = 2 * last product
"""

DEMO_REGISTERS = {"F2": 2.0}
DEMO_MEMORY = {8: 1, 16: 2, 24: 3}


def demo_checks(sim: TomasuloSimulator) -> List[Tuple[float, float, str]]:
    """(actual, expected, description) triples for the built-in demo."""
    def mem(addr):
        return decode_value(sim.cache.peek(addr, 8), 8)

    regs = sim.registers
    return [
        (mem(24), 6.0, "Mem[24] = 6 (3 * 2)"),
        (mem(16), 4.0, "Mem[16] = 4 (2 * 2)"),
        (mem(8), 2.0, "Mem[8]  = 2 (1 * 2)"),
        (regs.get_value("R1"), 0.0, "R1 = 0  (loop counter drained)"),
        (regs.get_value("F4"), 2.0, "F4 = 2  (last product)"),
        (regs.get_value("F6"), 4.0, "F6 = 4  (F4 + F4)"),
    ]

# ─────────────────────────────────────────────────────────────────────────────
# Main
# ─────────────────────────────────────────────────────────────────────────────

def parse_assignment(text: str) -> Tuple[str, float]:
    """'F2=3.5' -> ('F2', 3.5)."""
    key, sep, value = text.partition("=")
    if not sep or not key.strip():
        raise ValueError(f"expected NAME=VALUE, got {text!r}")
    return key.strip().upper(), float(value)


def parse_memory_init(text: str) -> Tuple[int, int, float]:
    """'100=42' -> (100, 8, 42.0); '100:4=42' -> (100, 4, 42.0)."""
    key, sep, value = text.partition("=")
    if not sep:
        raise ValueError(f"expected ADDR[:SIZE]=VALUE, got {text!r}")
    addr_text, _, size_text = key.partition(":")
    size = int(size_text) if size_text.strip() else 8
    if size not in _PACK_FORMAT:
        raise ValueError(f"memory size must be 4 or 8, got {size}")
    return int(addr_text, 0), size, float(value)


def build_arg_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Tomasulo dynamic-scheduling simulator"
    )
    parser.add_argument("--file", "-f", type=str, default=None,
                        help="Assembly file (one instruction per line)")
    parser.add_argument("--cycles", "-n", type=int, default=1000,
                        help="Maximum simulation cycles (default 1000)")
    parser.add_argument("--verbose", "-v", action="store_true",
                        help="Print state every cycle")
    parser.add_argument("--interval", type=float, default=0.0,
                        help="Free-run with this many seconds between cycles")
    parser.add_argument("--stations", type=str, default=None,
                        metavar="ADD,MUL,INT,LOAD,STORE",
                        help="Reservation station counts per pool")
    parser.add_argument("--latency", action="append", default=[],
                        metavar="MNEMONIC=N", help="Override an opcode latency")
    parser.add_argument("--cache-size", type=int, default=DEFAULT_CACHE_SIZE)
    parser.add_argument("--block-size", type=int, default=DEFAULT_BLOCK_SIZE)
    parser.add_argument("--hit-latency", type=int,
                        default=DEFAULT_CACHE_HIT_LATENCY)
    parser.add_argument("--miss-penalty", type=int,
                        default=DEFAULT_CACHE_MISS_PENALTY)
    parser.add_argument("--lsb-size", type=int,
                        default=DEFAULT_LOAD_STORE_BUFFER_SIZE,
                        help="Load/store buffer capacity")
    parser.add_argument("--reg", action="append", default=[],
                        metavar="NAME=VALUE", help="Preload a register")
    parser.add_argument("--mem", action="append", default=[],
                        metavar="ADDR[:SIZE]=VALUE",
                        help="Initialise memory (size 4 or 8, default 8)")
    parser.add_argument("--timing", action="store_true",
                        help="Print per-instruction cycle timing")
    parser.add_argument("--log", action="store_true",
                        help="Print the event log")
    return parser


def configure_from_args(sim: TomasuloSimulator, args: argparse.Namespace,
                        parser: argparse.ArgumentParser):
    if args.cache_size <= 0 or args.block_size <= 0:
        parser.error("cache and block sizes must be positive")
    if args.block_size > args.cache_size:
        parser.error("block size cannot exceed cache size")
    sim.configure_cache(args.cache_size, args.block_size,
                        args.hit_latency, args.miss_penalty)
    if args.lsb_size <= 0:
        parser.error("--lsb-size must be positive")
    sim.configure_load_store_buffer(args.lsb_size)

    if args.stations:
        try:
            counts = [int(c) for c in args.stations.split(",")]
        except ValueError:
            parser.error(f"bad --stations value {args.stations!r}")
        if len(counts) != 5 or min(counts) < 1:
            parser.error("--stations needs five positive counts")
        sim.initialize_stations(*counts)

    for item in args.latency:
        try:
            mnemonic, latency = parse_assignment(item)
        except ValueError as e:
            parser.error(str(e))
        if Opcode.from_mnemonic(mnemonic) is None or latency < 0:
            parser.error(f"bad --latency value {item!r}")
        sim.set_instruction_latency(mnemonic, int(latency))

    for item in args.reg:
        try:
            name, value = parse_assignment(item)
        except ValueError as e:
            parser.error(str(e))
        sim.preload_register(name, value)

    for item in args.mem:
        try:
            address, size, value = parse_memory_init(item)
        except ValueError as e:
            parser.error(str(e))
        sim.initialize_memory(address, value, size)


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_arg_parser()
    args = parser.parse_args(argv)

    sim = TomasuloSimulator(verbose=args.verbose)

    if args.file:
        try:
            with open(args.file, "r") as f:
                text = f.read()
        except OSError as e:
            parser.error(f"cannot read {args.file}: {e}")
        parsed = parse_program(text)
        print(f"Loaded {len(parsed.instructions)} instructions from {args.file}")
    else:
        parsed = parse_program(DEMO_PROGRAM)
        for name, value in DEMO_REGISTERS.items():
            sim.preload_register(name, value)
        for address, value in DEMO_MEMORY.items():
            sim.initialize_memory(address, value, 8)
        print(f"Running built-in demo program "
              f"({len(parsed.instructions)} instructions)\n")

    for lineno, text in parsed.skipped:
        print(f"  skipped line {lineno}: {text}")
    for address, label in parsed.unresolved:
        print(f"  unresolved branch target {label!r} at address {address} "
              f"(offset 0)")

    configure_from_args(sim, args, parser)
    sim.load_program(parsed.instructions)

    if args.interval > 0:
        runner = FreeRunner(sim, interval=args.interval, max_cycles=args.cycles)
        runner.start()
        try:
            runner.join()
        except KeyboardInterrupt:
            runner.stop()
            runner.join()
    else:
        sim.run(max_cycles=args.cycles)

    sim.dump_registers()
    sim.dump_stations()
    sim.dump_load_store_buffer()
    sim.dump_cache()
    sim.dump_memory()
    if args.timing:
        sim.dump_timing()
    if args.log:
        sim.dump_log()
    sim.dump_stats()

    if not args.file:
        print("\n═══ Demo Assertions ═══")
        all_pass = True
        for actual, expected, desc in demo_checks(sim):
            ok = actual == expected
            all_pass = all_pass and ok
            print(f"  {'✓' if ok else '✗'}  {desc}  (got {actual:g})")
        if all_pass:
            print("\n  All checks passed")
        else:
            print("\n  Some checks failed, rerun with --verbose")
    return 0


if __name__ == "__main__":
    sys.exit(main())
