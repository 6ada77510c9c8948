import pytest

from tide.config.solana_tokens import SOL, lamports_to_sol, make_token, sol_to_lamports


def test_sol_mint_is_wrapped_sol() -> None:
    assert SOL.mint == "So11111111111111111111111111111111111111112"
    assert SOL.decimals == 9
    assert SOL.to_raw(1.0) == 1_000_000_000


def test_lamport_conversion_absorbs_float_noise() -> None:
    # 3.0 * 60 / 100 is 1.7999999999999998 in binary floating point
    assert sol_to_lamports(3.0 * 60 / 100) == 1_800_000_000
    assert sol_to_lamports(0) == 0
    assert lamports_to_sol(2_500_000_000) == pytest.approx(2.5)


def test_configured_token_uses_its_decimals() -> None:
    token = make_token("TideMint1111111111111111111111111111111111", 6, symbol="tide")

    assert token.symbol == "TIDE"
    assert token.to_raw(1.5) == 1_500_000
    assert token.to_ui(250_000) == pytest.approx(0.25)

    with pytest.raises(ValueError):
        make_token(token.mint, -1)
