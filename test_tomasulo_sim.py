import io
import os
import tempfile
import unittest
from contextlib import redirect_stdout

from tomasulo_sim import (
    AccessKind, Cache, Category, CompletionGroup, FreeRunner, Instruction,
    LoadStoreBuffer, Opcode, Pending, Ready, RegisterFile,
    ReservationStationManager, TomasuloSimulator, decode_value, encode_value,
    main, parse_assignment, parse_memory_init, parse_program, to_int64,
    DEMO_PROGRAM, DEMO_MEMORY, DEMO_REGISTERS, demo_checks,
)


def make_sim(source, registers=None, memory=None, **kwargs):
    sim = TomasuloSimulator(**kwargs)
    for name, value in (registers or {}).items():
        sim.preload_register(name, value)
    for address, value in (memory or {}).items():
        sim.initialize_memory(address, value, 8)
    sim.load_program(parse_program(source).instructions)
    return sim


def run_demo():
    sim = make_sim(DEMO_PROGRAM, DEMO_REGISTERS, DEMO_MEMORY)
    sim.run(2000)
    return sim


class TestValueEncoding(unittest.TestCase):
    def test_truncates_toward_zero(self):
        self.assertEqual(to_int64(3.9), 3)
        self.assertEqual(to_int64(-3.9), -3)
        self.assertEqual(to_int64(float("nan")), 0)
        self.assertEqual(to_int64(float("inf")), (1 << 63) - 1)

    def test_encode_little_endian(self):
        self.assertEqual(encode_value(258, 4), b"\x02\x01\x00\x00")
        self.assertEqual(len(encode_value(1, 8)), 8)
        self.assertEqual(decode_value(encode_value(1234.7, 8), 8), 1234.0)

    def test_negative_reads_back_unsigned(self):
        self.assertEqual(decode_value(encode_value(-1, 4), 4), float(0xFFFFFFFF))


class TestRegisterFile(unittest.TestCase):
    def setUp(self):
        self.regs = RegisterFile()

    def test_unknown_names_read_zero(self):
        self.regs.set_value("R99", 5)
        self.regs.set_value("X3", 5)
        self.assertEqual(self.regs.get_value("R99"), 0.0)
        self.assertEqual(self.regs.get_value(None), 0.0)
        self.assertIsNone(self.regs.get_tag("Q1"))

    def test_r0_is_hardwired(self):
        self.regs.set_value("R0", 7)
        self.regs.set_tag("R0", 3)
        self.assertEqual(self.regs.get_value("R0"), 0.0)
        self.assertIsNone(self.regs.get_tag("R0"))

    def test_r0_aliases_are_hardwired(self):
        self.regs.set_value("R00", 7)
        self.regs.set_tag("r000", 3)
        self.assertEqual(self.regs.get_value("R0"), 0.0)
        self.assertIsNone(self.regs.get_tag("R0"))
        self.assertTrue(self.regs.is_zero_register("R00"))
        self.assertFalse(self.regs.is_zero_register("F0"))

    def test_clear_tag_only_for_current_producer(self):
        self.regs.set_tag("F4", 1)
        self.regs.set_tag("F4", 2)
        self.assertFalse(self.regs.clear_tag("F4", 1))
        self.assertEqual(self.regs.get_tag("F4"), 2)
        self.assertTrue(self.regs.clear_tag("F4", 2))
        self.assertIsNone(self.regs.get_tag("F4"))

    def test_case_insensitive_names(self):
        self.regs.set_value("f3", 1.5)
        self.assertEqual(self.regs.get_value("F3"), 1.5)
        self.assertEqual(self.regs.fp_registers()["F3"], 1.5)

    def test_reset(self):
        self.regs.set_value("R5", 9)
        self.regs.set_tag("R5", 0)
        self.regs.reset()
        self.assertEqual(self.regs.get_value("R5"), 0.0)
        self.assertEqual(self.regs.tags(), {})


class TestCache(unittest.TestCase):
    def setUp(self):
        # 8 blocks of 8 bytes
        self.cache = Cache(64, 8, 1, 10)

    def test_miss_then_hit(self):
        first = self.cache.load(0, 8)
        self.assertFalse(first.hit)
        self.assertEqual(first.latency, 10)
        second = self.cache.load(0, 8)
        self.assertTrue(second.hit)
        self.assertEqual(second.latency, 1)
        self.assertEqual((self.cache.hits, self.cache.misses), (1, 1))

    def test_refill_starts_at_requested_address(self):
        self.cache.load(0, 8)
        self.assertTrue(self.cache.load(4, 4).hit)
        self.assertFalse(self.cache.load(4, 8).hit)
        self.assertEqual(self.cache.blocks[0].base_address, 4)

    def test_store_is_write_back(self):
        self.cache.store(0, encode_value(42, 8))
        self.assertEqual(self.cache.read_memory(0, 8), bytes(8))
        self.assertEqual(decode_value(self.cache.peek(0, 8), 8), 42.0)

        # Address 64 maps to the same index and evicts the dirty block.
        self.cache.load(64, 8)
        self.assertEqual(decode_value(self.cache.read_memory(0, 8), 8), 42.0)

    def test_round_trip_through_eviction(self):
        self.cache.store(8, encode_value(1234, 8))
        self.cache.load(8 + 64, 8)
        result = self.cache.load(8, 8)
        self.assertEqual(decode_value(result.data, 8), 1234.0)

    def test_probe_store_has_no_side_effects(self):
        result = self.cache.probe_store(16, 8)
        self.assertFalse(result.hit)
        self.assertEqual(result.latency, 10)
        self.assertEqual((self.cache.hits, self.cache.misses), (0, 0))
        self.assertFalse(self.cache.blocks[2].valid)

    def test_reset_keeps_memory(self):
        self.cache.initialize_memory(16, 99, 8)
        self.cache.load(16, 8)
        self.cache.reset()
        self.assertEqual((self.cache.hits, self.cache.misses), (0, 0))
        self.assertFalse(any(b.valid for b in self.cache.blocks))
        self.assertEqual(decode_value(self.cache.read_memory(16, 8), 8), 99.0)
        self.cache.reset_memory()
        self.assertEqual(self.cache.read_memory(16, 8), bytes(8))

    def test_out_of_range_memory(self):
        self.cache.initialize_memory(-8, 5, 8)
        self.cache.initialize_memory(len(self.cache.memory), 5, 8)
        self.assertEqual(self.cache.read_memory(len(self.cache.memory) - 4, 8),
                         bytes(8))

    def test_index_and_tag(self):
        self.assertEqual(self.cache.index_of(72), 1)
        self.assertEqual(self.cache.tag_of(72), 1)


class TestLoadStoreBuffer(unittest.TestCase):
    @staticmethod
    def _inst(opcode, issue):
        inst = Instruction(opcode, dest="F0", src1="F0", base="R1")
        inst.issue_cycle = issue
        return inst

    def test_unknown_store_blocks_later_load(self):
        lsb = LoadStoreBuffer()
        lsb.reserve(self._inst(Opcode.S_D, 1), 9)
        self.assertTrue(lsb.has_address_clash_at_issue(200, 8, AccessKind.LOAD, 2))

    def test_unknown_load_blocks_only_stores(self):
        lsb = LoadStoreBuffer()
        lsb.reserve(self._inst(Opcode.L_D, 1), 7)
        self.assertFalse(lsb.has_address_clash_at_issue(200, 8, AccessKind.LOAD, 2))
        self.assertTrue(lsb.has_address_clash_at_issue(200, 8, AccessKind.STORE, 2))

    def test_overlap_rules(self):
        lsb = LoadStoreBuffer()
        lsb.reserve(self._inst(Opcode.S_D, 1), 9)
        lsb.resolve_store(9, 100, 1.0)
        self.assertTrue(lsb.has_address_clash_at_issue(104, 4, AccessKind.LOAD, 2))
        self.assertFalse(lsb.has_address_clash_at_issue(108, 4, AccessKind.LOAD, 2))
        self.assertFalse(lsb.has_address_clash_at_issue(96, 4, AccessKind.LOAD, 2))
        self.assertTrue(lsb.has_address_clash_at_issue(96, 8, AccessKind.LOAD, 2))
        self.assertTrue(lsb.has_address_clash_at_issue(96, 16, AccessKind.LOAD, 2))

    def test_later_and_completed_entries_ignored(self):
        lsb = LoadStoreBuffer()
        store = lsb.reserve(self._inst(Opcode.S_D, 1), 9)
        load = lsb.reserve(self._inst(Opcode.L_D, 2), 7)
        lsb.resolve_store(9, 100, 1.0)
        lsb.resolve_load_address(7, 100)
        self.assertTrue(lsb.has_address_clash(100, 8, load, AccessKind.LOAD))
        self.assertFalse(lsb.has_address_clash(100, 8, store, AccessKind.STORE))
        self.assertFalse(lsb.has_address_clash_at_issue(100, 8, AccessKind.LOAD, 1))
        lsb.remove(store)
        self.assertTrue(store.completed)
        self.assertFalse(lsb.has_address_clash(100, 8, load, AccessKind.LOAD))

    def test_capacity(self):
        lsb = LoadStoreBuffer(max_size=1)
        self.assertTrue(lsb.is_empty())
        lsb.reserve(self._inst(Opcode.L_D, 1), 7)
        self.assertTrue(lsb.is_full())


class TestReservationStations(unittest.TestCase):
    def test_default_layout(self):
        mgr = ReservationStationManager()
        names = [rs.name for rs in mgr.all_stations()]
        self.assertEqual(names, ["Add1", "Add2", "Add3", "Mult1", "Mult2",
                                 "Int1", "Int2", "Load1", "Load2",
                                 "Store1", "Store2"])
        self.assertEqual([rs.slot for rs in mgr.all_stations()], list(range(11)))

    def test_branches_use_integer_pool(self):
        mgr = ReservationStationManager()
        self.assertEqual(mgr.find_available_station(Opcode.BNE).name, "Int1")

    def test_no_free_station(self):
        mgr = ReservationStationManager(1, 1, 1, 1, 1)
        mgr.find_available_station(Opcode.MUL_D).busy = True
        self.assertIsNone(mgr.find_available_station(Opcode.DIV_D))

    def test_broadcast_resolves_addresses(self):
        mgr = ReservationStationManager()
        load = mgr.find_available_station(Opcode.L_D)
        load.busy = True
        load.instruction = Instruction(Opcode.L_D, dest="F0", base="R1",
                                       immediate=8)
        load.j = Pending(5)
        add = mgr.find_available_station(Opcode.ADD_D)
        add.busy = True
        add.instruction = Instruction(Opcode.ADD_D, "F2", "F0", "F0")
        add.j, add.k = Pending(5), Ready(1.0)

        consumers = mgr.update_operands(5, 100.0)
        self.assertEqual(load.j, Ready(108))
        self.assertEqual(add.j, Ready(100.0))
        self.assertEqual(set(rs.name for rs in consumers), {"Load1", "Add1"})

    def test_latency_table(self):
        mgr = ReservationStationManager()
        self.assertEqual(mgr.get_latency(Opcode.DIV_D), 40)
        mgr.set_latency("div.d", 12)
        self.assertEqual(mgr.get_latency(Opcode.DIV_D), 12)


class TestCompletionGroup(unittest.TestCase):
    def test_complete_after_all_retire(self):
        group = CompletionGroup(3)
        group.add(0)
        group.add(5)
        group.retire(0)
        self.assertFalse(group.complete)
        group.retire(5)
        self.assertTrue(group.complete)


class TestParser(unittest.TestCase):
    def test_basic_program(self):
        result = parse_program("ADDI R1,R0,5\nADD.D F2, F0, F0\n")
        self.assertEqual(len(result.instructions), 2)
        addi, add = result.instructions
        self.assertEqual((addi.opcode, addi.dest, addi.src1, addi.immediate),
                         (Opcode.ADDI, "R1", "R0", 5))
        self.assertEqual((add.dest, add.src1, add.src2), ("F2", "F0", "F0"))
        self.assertEqual([i.address for i in result.instructions], [0, 4])

    def test_memory_operands(self):
        result = parse_program("L.D F0, -8(R1)\nsw f2, 16(r3)")
        load, store = result.instructions
        self.assertEqual((load.dest, load.base, load.immediate), ("F0", "R1", -8))
        self.assertEqual((store.opcode, store.src1, store.base, store.immediate),
                         (Opcode.SW, "F2", "R3", 16))

    def test_labels_and_branch_offsets(self):
        source = ("# header comment\n"
                  "        ADDI R1, R0, 2\n"
                  "LOOP:\n"
                  "        SUBI R1, R1, 1   # decrement\n"
                  "        BNE  R1, R0, LOOP\n"
                  "        BEQ  R1, R0, DONE\n"
                  "DONE:   ADDI R2, R0, 1\n")
        result = parse_program(source)
        self.assertEqual(result.labels, {"LOOP": 4, "DONE": 16})
        bne, beq = result.instructions[2], result.instructions[3]
        self.assertEqual(bne.immediate, -2)
        self.assertEqual(beq.immediate, 0)
        self.assertEqual(bne.address + 4 + bne.immediate * 4, 4)

    def test_numeric_and_unresolved_targets(self):
        result = parse_program("BNE R1, R2, 3\nBEQ R1, R2, NOWHERE")
        self.assertEqual(result.instructions[0].immediate, 3)
        self.assertEqual(result.instructions[1].immediate, 0)
        self.assertEqual(result.unresolved, [(4, "NOWHERE")])

    def test_malformed_lines_skipped(self):
        source = "ADD.D F2\nFOO R1, R2\nADDI R1, R0, 5\nL.D F0, R1"
        result = parse_program(source)
        self.assertEqual(len(result.instructions), 1)
        self.assertEqual(result.instructions[0].address, 0)
        self.assertEqual([n for n, _ in result.skipped], [1, 2, 4])


class TestSimulatorTiming(unittest.TestCase):
    def test_dependent_pair(self):
        sim = make_sim("ADDI R1, R0, 5\nADD.D F2, F0, F0")
        sim.step()
        self.assertEqual(sim.state.trace[0].issue_cycle, 1)
        self.assertEqual(sim.stations.station(5).name, "Int1")
        self.assertTrue(sim.stations.station(5).busy)
        sim.run()

        addi, add = sim.state.trace
        self.assertEqual((addi.issue_cycle, addi.execute_start_cycle,
                          addi.execute_end_cycle, addi.write_back_cycle),
                         (1, 2, 2, 3))
        self.assertEqual(add.issue_cycle, 2)
        self.assertEqual(sim.registers.get_value("R1"), 5.0)
        self.assertTrue(sim.is_complete)
        self.assertEqual(sim.state.status,
                         f"Simulation Complete - Total Cycles: {sim.state.cycle}")

    def test_divide_by_zero_yields_zero(self):
        sim = make_sim("DIV.D F0, F2, F4", {"F2": 6.0})
        sim.run()
        div = sim.state.trace[0]
        self.assertEqual(sim.registers.get_value("F0"), 0.0)
        self.assertEqual(div.execute_end_cycle - div.execute_start_cycle, 39)
        self.assertEqual(div.write_back_cycle, 42)

    def test_configured_latency(self):
        sim = make_sim("ADD.D F2, F0, F0")
        sim.set_instruction_latency("ADD.D", 5)
        sim.run()
        add = sim.state.trace[0]
        self.assertEqual((add.execute_start_cycle, add.execute_end_cycle,
                          add.write_back_cycle), (2, 6, 7))

    def test_empty_program(self):
        sim = make_sim("")
        self.assertTrue(sim.step())
        self.assertTrue(sim.is_complete)
        self.assertFalse(sim.step())
        self.assertEqual(sim.state.cycle, 1)

    def test_structural_stall(self):
        sim = make_sim("MUL.D F0, F2, F2\nMUL.D F4, F2, F2")
        sim.initialize_stations(1, 1, 1, 1, 1)
        sim.run()
        first, second = sim.state.trace
        self.assertEqual(first.write_back_cycle, 12)
        self.assertEqual(second.issue_cycle, 13)
        self.assertGreater(sim.structural_stalls, 0)

    def test_full_load_store_buffer_stalls_issue(self):
        sim = make_sim("L.D F0, 0(R0)\nL.D F2, 64(R0)")
        sim.configure_load_store_buffer(1)
        sim.run()
        first, second = sim.state.trace
        self.assertGreater(second.issue_cycle, first.write_back_cycle - 1)
        self.assertGreater(sim.structural_stalls, 0)


class TestSimulatorHazards(unittest.TestCase):
    def test_load_waits_for_earlier_store(self):
        sim = make_sim("S.D F0, 0(R1)\nL.D F2, 0(R1)", {"R1": 100, "F0": 7})
        sim.run()
        store, load = sim.state.trace
        self.assertEqual(store.write_back_cycle, 14)
        self.assertEqual(load.issue_cycle, 15)
        self.assertGreater(load.execute_start_cycle, store.execute_start_cycle)
        self.assertEqual(sim.registers.get_value("F2"), 7.0)
        self.assertEqual((sim.cache.hits, sim.cache.misses), (1, 1))
        self.assertGreater(sim.hazard_stalls, 0)

    def test_stale_producer_keeps_newer_tag(self):
        sim = make_sim("L.D F0, 0(R1)\nDIV.D F0, F2, F4", memory={0: 5})
        for _ in range(14):
            sim.step()
        load = sim.state.trace[0]
        self.assertEqual(load.write_back_cycle, 14)
        self.assertEqual(sim.registers.get_value("F0"), 5.0)
        self.assertEqual(sim.registers.get_tag("F0"), 3)  # Mult1
        sim.run()
        self.assertIsNone(sim.registers.get_tag("F0"))
        self.assertEqual(sim.registers.get_value("F0"), 0.0)

    def test_simultaneous_completion_holds_consumers(self):
        source = ("ADD.D F2, F0, F0\n"
                  "ADDI  R1, R0, 5\n"
                  "ADD.D F4, F2, F2\n"
                  "SUBI  R2, R1, 1\n")
        sim = make_sim(source)
        sim.run()
        add, addi, consumer, subi = sim.state.trace
        self.assertEqual(add.execute_end_cycle, addi.execute_end_cycle)
        self.assertEqual(add.write_back_cycle, 4)
        self.assertEqual(addi.write_back_cycle, 5)
        # F4's operand was ready in cycle 5 but its group had not fully retired.
        self.assertEqual(consumer.execute_start_cycle, 6)
        self.assertEqual(subi.execute_start_cycle, 6)
        self.assertEqual(sim.registers.get_value("R2"), 4.0)

    def test_simultaneous_completion_holds_load(self):
        source = ("ADDI  R1, R0, 100\n"
                  "ADD.D F2, F0, F0\n"
                  "L.D   F4, 0(R1)\n")
        sim = make_sim(source, memory={100: 3})
        sim.set_instruction_latency("ADDI", 3)
        for _ in range(6):
            sim.step()
        load = sim.state.trace[2]
        # Base is known and recorded, but the ADD.D sharing R1's end cycle
        # has only just retired.
        self.assertEqual(sim.load_store_buffer.entries[0].address, 100)
        self.assertEqual(load.execute_start_cycle, -1)
        sim.run()

        addi, add, load = sim.state.trace
        self.assertEqual(addi.execute_end_cycle, add.execute_end_cycle)
        self.assertEqual((addi.write_back_cycle, add.write_back_cycle), (5, 6))
        self.assertEqual(load.execute_start_cycle, 7)
        self.assertEqual(sim.registers.get_value("F4"), 3.0)

    def test_late_address_rechecked_at_execute(self):
        source = ("S.D  F0, 0(R2)\n"
                  "ADDI R1, R0, 100\n"
                  "L.D  F2, 0(R1)\n")
        sim = make_sim(source, {"R2": 100, "F0": 7})
        sim.run()
        store, addi, load = sim.state.trace
        # The load issued behind the store with its base still pending.
        self.assertEqual(load.issue_cycle, 3)
        self.assertEqual(sim.hazard_stalls, 0)
        self.assertEqual(store.write_back_cycle, 14)
        self.assertEqual(load.execute_start_cycle, 15)
        self.assertEqual(sim.registers.get_value("F2"), 7.0)

    def test_zero_register_alias_is_not_written(self):
        sim = make_sim("ADDI R00, R0, 5\nADDI R1, R0, 1")
        sim.run()
        self.assertEqual(sim.registers.get_value("R0"), 0.0)
        self.assertEqual(sim.registers.get_value("R1"), 1.0)
        self.assertEqual(sim.registers.tags(), {})


class TestSimulatorBranches(unittest.TestCase):
    LOOP = ("        ADDI R1, R0, 2\n"
            "LOOP:   SUBI R1, R1, 1\n"
            "        BNE  R1, R0, LOOP\n")

    def test_loop_executes_twice(self):
        sim = make_sim(self.LOOP)
        sim.run()
        self.assertEqual(sim.registers.get_value("R1"), 0.0)
        self.assertEqual([i.mnemonic for i in sim.state.trace],
                         ["ADDI", "SUBI", "BNE", "SUBI", "BNE"])
        self.assertTrue(any("Branch TAKEN" in line for line in sim.log))

    def test_no_issue_while_branch_outstanding(self):
        sim = make_sim(self.LOOP)
        sim.run()
        branches = [i for i in sim.state.trace if i.mnemonic == "BNE"]
        for branch in branches:
            later = [i for i in sim.state.trace
                     if i.issue_cycle > branch.issue_cycle]
            if later:
                self.assertGreater(min(i.issue_cycle for i in later),
                                   branch.write_back_cycle - 1)

    def test_taken_branch_clears_completion(self):
        sim = make_sim(self.LOOP)
        while len(sim.state.trace) < 3 or sim.state.pc != 1:
            sim.step()
        self.assertEqual(sim.state.pc, 1)
        self.assertFalse(sim.is_complete)
        self.assertTrue(sim.branch_unit.taken)

    def test_completion_recomputed_each_cycle(self):
        sim = make_sim(self.LOOP)
        sim.step()
        sim.state.complete = True
        sim._check_completion()
        self.assertFalse(sim.is_complete)

    def test_not_taken_falls_through(self):
        sim = make_sim("BEQ R1, R0, 1\nADDI R2, R0, 3", {"R1": 1})
        sim.run()
        self.assertEqual(sim.registers.get_value("R2"), 3.0)
        self.assertFalse(sim.branch_unit.taken)

    def test_target_past_last_instruction_falls_through(self):
        sim = make_sim("BEQ R0, R0, 2\nADDI R1, R0, 9\nADDI R2, R0, 7")
        sim.run()
        self.assertTrue(sim.is_complete)
        self.assertEqual([i.mnemonic for i in sim.state.trace],
                         ["BEQ", "ADDI", "ADDI"])
        self.assertEqual(sim.registers.get_value("R1"), 9.0)
        self.assertEqual(sim.registers.get_value("R2"), 7.0)
        self.assertTrue(any("ERROR" in line for line in sim.log))

    def test_stall_follows_branch_unit(self):
        sim = make_sim("BNE R1, R0, 1\nADDI R2, R0, 3", {"R1": 1})
        sim.step()
        self.assertTrue(sim.branch_unit.is_processing)
        self.assertTrue(sim.branch_stall)
        while sim.state.trace[0].write_back_cycle == -1:
            sim.step()
        self.assertFalse(sim.branch_stall)
        self.assertGreater(sim.branch_stall_cycles, 0)

    def test_missing_target_is_logged(self):
        sim = make_sim("BNE R1, R0, 50", {"R1": 1})
        sim.run()
        self.assertTrue(sim.is_complete)
        self.assertTrue(any("ERROR" in line for line in sim.log))


class TestSimulatorInvariants(unittest.TestCase):
    def test_demo_results(self):
        sim = run_demo()
        self.assertTrue(sim.is_complete)
        for actual, expected, desc in demo_checks(sim):
            self.assertEqual(actual, expected, desc)

    def test_stage_order_per_instruction(self):
        sim = run_demo()
        for inst in sim.state.trace:
            self.assertTrue(inst.completed)
            self.assertLessEqual(inst.issue_cycle, inst.execute_start_cycle)
            self.assertLessEqual(inst.execute_start_cycle, inst.execute_end_cycle)
            self.assertLess(inst.execute_end_cycle, inst.write_back_cycle)

    def test_single_write_back_per_cycle(self):
        sim = run_demo()
        cycles = [inst.write_back_cycle for inst in sim.state.trace]
        self.assertEqual(len(cycles), len(set(cycles)))

    def test_deterministic(self):
        a, b = run_demo(), run_demo()
        self.assertEqual(a.log, b.log)
        self.assertEqual(a.registers.fp_registers(), b.registers.fp_registers())
        self.assertEqual(a.state.cycle, b.state.cycle)

    def test_reset_restores_presets_and_keeps_memory(self):
        sim = run_demo()
        sim.reset()
        self.assertEqual(sim.state.cycle, 0)
        self.assertEqual(sim.state.trace, [])
        self.assertEqual(sim.registers.get_value("F2"), 2.0)
        self.assertEqual(sim.registers.get_value("R1"), 0.0)
        self.assertEqual(sim.registers.tags(), {})
        self.assertTrue(sim.load_store_buffer.is_empty())
        self.assertFalse(any(rs.busy for rs in sim.stations.all_stations()))
        # Dirty blocks were dropped, memory still holds the initial image.
        self.assertEqual(decode_value(sim.cache.read_memory(24, 8), 8), 3.0)

    def test_configure_cache_keeps_memory(self):
        sim = make_sim("L.D F0, 0(R0)", memory={0: 11})
        sim.configure_cache(256, 16, 2, 20)
        sim.run()
        self.assertEqual(sim.registers.get_value("F0"), 11.0)
        self.assertEqual(sim.state.trace[0].execute_end_cycle
                         - sim.state.trace[0].execute_start_cycle, 21)


class TestFreeRunner(unittest.TestCase):
    def test_runs_to_completion(self):
        sim = make_sim("ADDI R1, R0, 5\nADD.D F2, F0, F0")
        seen = []
        runner = FreeRunner(sim, interval=0, on_step=lambda s: seen.append(s.state.cycle))
        runner.start()
        runner.join(timeout=5)
        self.assertFalse(runner.running)
        self.assertTrue(sim.is_complete)
        self.assertEqual(seen, list(range(1, sim.state.cycle + 1)))

    def test_stop(self):
        sim = make_sim("DIV.D F0, F2, F4")
        runner = FreeRunner(sim, interval=0.05)
        runner.start()
        runner.stop()
        runner.join(timeout=5)
        self.assertFalse(runner.running)
        self.assertFalse(sim.is_complete)


class TestCommandLine(unittest.TestCase):
    def test_assignment_helpers(self):
        self.assertEqual(parse_assignment("f2=3.5"), ("F2", 3.5))
        self.assertEqual(parse_memory_init("100=42"), (100, 8, 42.0))
        self.assertEqual(parse_memory_init("100:4=42"), (100, 4, 42.0))
        with self.assertRaises(ValueError):
            parse_assignment("F2")
        with self.assertRaises(ValueError):
            parse_memory_init("100:3=1")

    def test_demo_run(self):
        out = io.StringIO()
        with redirect_stdout(out):
            self.assertEqual(main([]), 0)
        self.assertIn("All checks passed", out.getvalue())

    def test_file_run(self):
        fd, path = tempfile.mkstemp(suffix=".s")
        with os.fdopen(fd, "w") as f:
            f.write("L.D F0, 0(R1)\nADD.D F2, F0, F4\n")
        try:
            out = io.StringIO()
            with redirect_stdout(out):
                main(["--file", path, "--reg", "R1=100", "--reg", "F4=1",
                      "--mem", "100=41", "--timing", "--log"])
            text = out.getvalue()
        finally:
            os.remove(path)
        self.assertIn("Loaded 2 instructions", text)
        self.assertIn("F2 =        42", text)
        self.assertIn("Event Log", text)

    def test_bad_option_exits(self):
        with redirect_stdout(io.StringIO()):
            with self.assertRaises(SystemExit):
                main(["--stations", "1,2"])


if __name__ == "__main__":
    unittest.main()
