import asyncio
import random
import unittest
from collections import deque

from fakes import register, wait_until
from signaling_service.models import ServiceState
from signaling_service.pairing import find_directory_violations, join_waiting_pool, leave


class TestJoinWaitingPool(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self):
        self.state = ServiceState()
        self.sockets = {cid: register(self.state, cid) for cid in ("a", "b", "c")}

    async def test_first_client_waits(self):
        partner = await join_waiting_pool(self.state, "a")
        self.assertIsNone(partner)
        self.assertEqual(self.state.waiting_pool, ["a"])
        self.assertEqual(self.state.partners, {})
        self.assertEqual(self.sockets["a"].sent, [])

    async def test_fifo_pairs_two_earliest(self):
        await join_waiting_pool(self.state, "a")
        await join_waiting_pool(self.state, "b")
        await join_waiting_pool(self.state, "c")
        self.assertEqual(self.state.partners, {"a": "b", "b": "a"})
        self.assertEqual(self.state.waiting_pool, ["c"])
        self.assertEqual(self.state.status_of("c"), "waiting")

    async def test_matched_sent_to_both_with_caller(self):
        await join_waiting_pool(self.state, "a")
        await join_waiting_pool(self.state, "b")
        self.assertEqual(self.sockets["a"].events("matched"), [{"type": "matched", "partnerId": "b", "caller": "b"}])
        self.assertEqual(self.sockets["b"].events("matched"), [{"type": "matched", "partnerId": "a", "caller": "b"}])
        self.assertEqual(self.sockets["c"].sent, [])

    async def test_join_twice_while_waiting_is_noop(self):
        await join_waiting_pool(self.state, "a")
        await join_waiting_pool(self.state, "a")
        self.assertEqual(self.state.waiting_pool, ["a"])
        self.assertEqual(self.state.partners, {})

    async def test_join_while_paired_is_noop(self):
        await join_waiting_pool(self.state, "a")
        await join_waiting_pool(self.state, "b")
        await join_waiting_pool(self.state, "a")
        self.assertEqual(self.state.waiting_pool, [])
        self.assertEqual(self.state.partners, {"a": "b", "b": "a"})
        self.assertEqual(len(self.sockets["a"].events("matched")), 1)

    async def test_stale_pool_entry_is_skipped(self):
        await join_waiting_pool(self.state, "a")
        await join_waiting_pool(self.state, "b")
        self.state.waiting_pool.insert(0, "ghost")
        await join_waiting_pool(self.state, "c")
        self.assertEqual(self.state.waiting_pool, ["c"])

    async def test_unregistered_client_cannot_join(self):
        await join_waiting_pool(self.state, "nobody")
        self.assertEqual(self.state.waiting_pool, [])

    async def test_send_failure_still_pairs(self):
        self.sockets["a"].fail = True
        await join_waiting_pool(self.state, "a")
        partner = await join_waiting_pool(self.state, "b")
        self.assertEqual(partner, "a")
        self.assertEqual(len(self.sockets["b"].events("matched")), 1)


class TestStuckSocket(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self):
        self.state = ServiceState(send_timeout=0.2)
        self.sockets = {cid: register(self.state, cid) for cid in ("s1", "c2", "x3", "y4")}
        self.sockets["s1"].stuck = True

    async def test_stuck_partner_does_not_block_other_clients(self):
        await join_waiting_pool(self.state, "s1")
        pairing = asyncio.create_task(join_waiting_pool(self.state, "c2"))
        await wait_until(lambda: self.sockets["c2"].events("matched"))

        await asyncio.wait_for(join_waiting_pool(self.state, "x3"), timeout=0.1)
        await asyncio.wait_for(join_waiting_pool(self.state, "y4"), timeout=0.1)
        self.assertEqual(self.state.partners["x3"], "y4")
        self.assertEqual(len(self.sockets["y4"].events("matched")), 1)
        self.assertFalse(pairing.done())

        self.assertEqual(await pairing, "s1")
        self.assertEqual(self.state.partners["c2"], "s1")

    async def test_leave_while_partner_socket_is_stuck(self):
        await join_waiting_pool(self.state, "s1")
        await join_waiting_pool(self.state, "c2")
        await asyncio.wait_for(leave(self.state, "c2"), timeout=1.0)
        self.assertEqual(self.state.partners, {})
        self.assertEqual(self.state.clients["s1"].outbox, deque())

    async def test_events_keep_their_order_per_client(self):
        self.sockets["s1"].stuck = False
        await join_waiting_pool(self.state, "s1")
        await join_waiting_pool(self.state, "c2")
        await leave(self.state, "c2")
        self.assertEqual([m["type"] for m in self.sockets["s1"].sent], ["matched", "user_left"])


class TestLeave(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self):
        self.state = ServiceState()
        self.sockets = {cid: register(self.state, cid) for cid in ("a", "b", "c")}

    async def test_leave_notifies_partner_only(self):
        await join_waiting_pool(self.state, "a")
        await join_waiting_pool(self.state, "b")
        await join_waiting_pool(self.state, "c")
        partner = await leave(self.state, "a")
        self.assertEqual(partner, "b")
        self.assertEqual(self.state.partners, {})
        self.assertEqual(self.sockets["b"].events("user_left"), [{"type": "user_left"}])
        self.assertEqual(self.sockets["a"].events("user_left"), [])
        self.assertEqual(self.sockets["c"].events("user_left"), [])

    async def test_leave_is_idempotent(self):
        await join_waiting_pool(self.state, "a")
        await join_waiting_pool(self.state, "b")
        await leave(self.state, "a")
        snapshot = (list(self.state.waiting_pool), dict(self.state.partners), list(self.sockets["b"].sent))
        self.assertIsNone(await leave(self.state, "a"))
        self.assertEqual((self.state.waiting_pool, self.state.partners, self.sockets["b"].sent), snapshot)

    async def test_leave_removes_waiting_client(self):
        await join_waiting_pool(self.state, "a")
        await leave(self.state, "a")
        self.assertEqual(self.state.waiting_pool, [])
        self.assertEqual(self.state.status_of("a"), "idle")

    async def test_partner_can_rejoin_after_leave(self):
        await join_waiting_pool(self.state, "a")
        await join_waiting_pool(self.state, "b")
        await leave(self.state, "a")
        await join_waiting_pool(self.state, "b")
        await join_waiting_pool(self.state, "c")
        self.assertEqual(self.state.partners, {"b": "c", "c": "b"})

    async def test_asymmetric_directory_forces_everyone_out(self):
        self.state.partners = {"a": "b", "b": "c", "c": "b"}
        await leave(self.state, "a")
        self.assertEqual(self.state.partners, {})
        self.assertEqual(len(self.sockets["b"].events("user_left")), 1)
        self.assertEqual(len(self.sockets["c"].events("user_left")), 1)
        self.assertEqual(self.sockets["a"].events("user_left"), [])


class TestPoolInvariants(unittest.IsolatedAsyncioTestCase):
    async def test_random_join_leave_sequences_keep_invariants(self):
        rng = random.Random(20240611)
        ids = [f"client{i}" for i in range(6)]
        for _ in range(20):
            state = ServiceState()
            for cid in ids:
                register(state, cid)
            for _ in range(60):
                cid = rng.choice(ids)
                if rng.random() < 0.6:
                    await join_waiting_pool(state, cid)
                else:
                    await leave(state, cid)
                self.assertEqual(find_directory_violations(state), [])
                for key in state.partners:
                    self.assertNotIn(key, state.waiting_pool)
                    self.assertEqual(state.partners[state.partners[key]], key)
                self.assertEqual(len(state.waiting_pool), len(set(state.waiting_pool)))
                self.assertLessEqual(len(state.waiting_pool), 1)

    async def test_violation_detection(self):
        state = ServiceState()
        state.partners = {"a": "b", "b": "a", "c": "a"}
        state.waiting_pool = ["a"]
        self.assertEqual(find_directory_violations(state), ["a", "c"])


if __name__ == "__main__":
    unittest.main()
