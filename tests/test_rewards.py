import threading

from rewards import RewardCounter


def test_credit_accumulates():
    counter = RewardCounter()
    assert counter.credit() == 100
    assert counter.credit() == 200
    assert counter.validations == 2


def test_seed_never_moves_backwards():
    counter = RewardCounter(credit_per_validation=10)
    counter.seed(500)
    assert counter.pending_payouts == 500
    counter.seed(100)
    assert counter.pending_payouts == 500
    counter.seed(None)
    assert counter.credit() == 510


def test_concurrent_credits():
    counter = RewardCounter(credit_per_validation=1)
    threads = [threading.Thread(target=lambda: [counter.credit() for _ in range(200)]) for _ in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    assert counter.pending_payouts == 1600
    assert counter.validations == 1600
