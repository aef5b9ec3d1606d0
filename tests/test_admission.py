import threading

import pytest

from admission import AdmissionController


def test_rejects_when_full():
    controller = AdmissionController(2)
    assert controller.try_admit()
    assert controller.try_admit()
    assert not controller.try_admit()
    assert controller.active_count == 2
    assert controller.available == 0


def test_release_frees_exactly_one_slot():
    controller = AdmissionController(1)
    assert controller.try_admit()
    assert not controller.try_admit()
    controller.release()
    assert controller.try_admit()
    assert not controller.try_admit()


def test_release_without_admission_is_an_error():
    controller = AdmissionController(1)
    with pytest.raises(RuntimeError):
        controller.release()


def test_cap_must_be_positive():
    with pytest.raises(ValueError):
        AdmissionController(0)


def test_concurrent_admissions_never_exceed_cap():
    controller = AdmissionController(5)
    admitted = []
    lock = threading.Lock()
    barrier = threading.Barrier(20)

    def worker():
        barrier.wait()
        if controller.try_admit():
            with lock:
                admitted.append(1)

    threads = [threading.Thread(target=worker) for _ in range(20)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert len(admitted) == 5
    assert controller.active_count == 5
    for _ in admitted:
        controller.release()
    assert controller.active_count == 0
