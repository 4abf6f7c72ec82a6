"""
Tests for the ephemeral port pool.
"""
import threading

import pytest

from udp_rendezvous.errors import PoolExhausted
from udp_rendezvous.ports import DEFAULT_PORT_RANGE, PortPool


class TestPortPool:
    """Test leasing and releasing ports."""

    def test_default_range(self):
        """Test the default pool holds 50 ports."""
        pool = PortPool(9000)

        assert pool.port_range == DEFAULT_PORT_RANGE == 50
        assert pool.available == 50

    def test_leases_lowest_free_port(self):
        """Test ports are leased from base + 1 upward."""
        pool = PortPool(9000, 3)

        assert pool.lease() == 9001
        assert pool.lease() == 9002
        assert 9001 in pool
        assert len(pool) == 2

    def test_exhaustion(self):
        """Test leasing from a full pool raises PoolExhausted."""
        pool = PortPool(9000, 2)
        pool.lease()
        pool.lease()

        with pytest.raises(PoolExhausted) as info:
            pool.lease()

        assert "9001-9002 (2)" in str(info.value)

    def test_release_makes_port_leasable(self):
        """Test a released port is handed out again."""
        pool = PortPool(9000, 3)
        first = pool.lease()
        pool.lease()

        pool.release(first)

        assert first not in pool
        assert pool.lease() == first

    def test_release_is_idempotent(self):
        """Test releasing a free port twice changes nothing."""
        pool = PortPool(9000, 3)
        port = pool.lease()

        pool.release(port)
        pool.release(port)
        pool.release(12345)

        assert pool.available == 3

    def test_invalid_bounds(self):
        """Test ranges outside the port space are rejected."""
        with pytest.raises(ValueError):
            PortPool(9000, 0)
        with pytest.raises(ValueError):
            PortPool(65530, 10)

    def test_never_double_issues_across_threads(self):
        """Test concurrent leases never hand out the same port."""
        pool = PortPool(20000, 200)
        leased = []
        lock = threading.Lock()

        def worker():
            for _ in range(20):
                port = pool.lease()
                with lock:
                    leased.append(port)

        threads = [threading.Thread(target=worker) for _ in range(10)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert len(leased) == 200
        assert len(set(leased)) == 200
        assert pool.leased == sorted(leased)
        assert pool.available == 0
