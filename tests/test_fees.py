"""
Fee schedule, conservation and outputs hash tests
"""

import pytest

from cloak.crypto_core import fees
from cloak.crypto_core.hashing import U64_MAX, blake3_hash, u64_le

from tests.helpers import address


class TestFeeSchedule:
    def test_end_to_end_one_sol(self):
        amount = 1_000_000_000
        assert fees.variable_fee(amount) == 5_000_000
        assert fees.fee(amount) == 7_500_000
        assert fees.distributable_amount(amount) == 992_500_000

    def test_variable_fee_floors(self):
        assert fees.variable_fee(199) == 0
        assert fees.variable_fee(200) == 1
        assert fees.variable_fee(399) == 1

    @pytest.mark.parametrize("amount", [0, 1, 1_000_000_000, U64_MAX // 2])
    def test_conservation_with_single_output(self, amount):
        f = fees.fee(amount)
        out = amount - f
        assert isinstance(f, int) and isinstance(out, int)
        assert out + f == amount

    @pytest.mark.parametrize("amount", [1_000_000_000, U64_MAX // 2])
    def test_check_conservation_accepts_exact_split(self, amount):
        fees.check_conservation([fees.distributable_amount(amount)], fees.fee(amount), amount)

    def test_large_amounts_stay_exact(self):
        amount = U64_MAX // 2
        assert fees.variable_fee(amount) == amount * 5 // 1000

    def test_rejects_floats_and_out_of_range(self):
        with pytest.raises(TypeError):
            fees.fee(1.0)
        with pytest.raises(ValueError):
            fees.fee(-1)
        with pytest.raises(ValueError):
            fees.fee(U64_MAX + 1)

    def test_relay_fee_bps_rounds_up(self):
        assert fees.relay_fee_bps(1_000_000_000, 7_500_000) == 75
        assert fees.relay_fee_bps(1_000_000_000, 7_500_001) == 76
        assert fees.relay_fee_bps(0, 2_500_000) == 0


class TestConservation:
    def test_mismatch_raises(self):
        with pytest.raises(fees.ConservationError):
            fees.check_conservation([992_500_001], 7_500_000, 1_000_000_000)

    def test_negative_output_raises(self):
        with pytest.raises(fees.ConservationError):
            fees.check_conservation([-1, 1_000_000_001], 0, 1_000_000_000)

    def test_is_an_assertion_error(self):
        assert issubclass(fees.ConservationError, AssertionError)


class TestOutputsHash:
    def test_layout(self):
        a, b = address(1), address(2)
        expected = blake3_hash(bytes([1]) * 32, u64_le(10), bytes([2]) * 32, u64_le(20))
        assert fees.outputs_hash([(a, 10), (b, 20)]) == expected

    def test_deterministic(self):
        outs = [(address(3), 992_500_000)]
        assert fees.outputs_hash(outs) == fees.outputs_hash(list(outs))

    def test_order_sensitive(self):
        a, b = address(1), address(2)
        assert fees.outputs_hash([(a, 10), (b, 20)]) != fees.outputs_hash([(b, 20), (a, 10)])

    def test_raw_bytes_and_base58_agree(self):
        assert fees.outputs_hash([(bytes([9]) * 32, 1)]) == fees.outputs_hash([(address(9), 1)])

    def test_swap_layout(self):
        mint, ata = address(4), address(5)
        expected = blake3_hash(bytes([4]) * 32, bytes([5]) * 32, u64_le(123), u64_le(1_000_000_000))
        assert fees.swap_outputs_hash(mint, ata, 123, 1_000_000_000) == expected

    def test_stake_layout(self):
        expected = blake3_hash(bytes([6]) * 32, u64_le(1_000_000_000))
        assert fees.stake_outputs_hash(address(6), 1_000_000_000) == expected

    def test_unstake_binds_stake_account(self):
        outs = [(address(1), 5)]
        assert fees.unstake_outputs_hash(address(6), outs) != fees.unstake_outputs_hash(address(7), outs)
        assert fees.unstake_outputs_hash(address(6), outs) == blake3_hash(bytes([6]) * 32, bytes([1]) * 32, u64_le(5))

    @pytest.mark.parametrize("bad", ["0OIl", "11111", b"\x00" * 31])
    def test_invalid_addresses_raise(self, bad):
        with pytest.raises(ValueError):
            fees.outputs_hash([(bad, 1)])
