import threading

from radio_nocturne.cancel import CancellationToken


def test_callbacks_run_once_on_cancel():
    token = CancellationToken()
    calls = []
    token.add_callback(lambda: calls.append(1))

    token.cancel()
    token.cancel()

    assert token.cancelled
    assert calls == [1]


def test_callback_added_after_cancel_runs_immediately():
    token = CancellationToken()
    token.cancel()
    calls = []
    token.add_callback(lambda: calls.append(1))
    assert calls == [1]


def test_removed_callback_is_not_called():
    token = CancellationToken()
    calls = []
    remove = token.add_callback(lambda: calls.append(1))
    remove()
    token.cancel()
    assert calls == []


def test_cancel_from_another_thread():
    token = CancellationToken()
    thread = threading.Thread(target=token.cancel)
    thread.start()
    assert token.wait(1)
    thread.join()
