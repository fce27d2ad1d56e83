import threading

import pytest

from caterina_tool.boot_transport.avr109 import (
    Avr109Session,
    FlashState,
    PageCursor,
    progress_percent,
)
from caterina_tool.errors import (
    FlashCancelled,
    ProtocolDesync,
    ProtocolTimeout,
    TransportClosedEarly,
    TransportError,
)
from caterina_tool.firmware.ihex import MemoryImage
from support import session_replies


def image_of(length):
    return MemoryImage(bytes((i * 7 + 3) & 0xFF for i in range(length)))


class TestHappyPath:

    def test_command_sequence(self, scripted, fast_timing):
        image = image_of(200)
        t = scripted(session_replies(2))
        session = Avr109Session(image, t, 128, timing=fast_timing)
        result = session.run()

        assert t.writes[0] == b"S"
        assert t.writes[1] == b"P"
        assert t.writes[2] == b"A\x00\x00"
        assert t.writes[3][:4] == b"B\x00\x80F"
        assert t.writes[4][:4] == b"B\x00\x80F"
        assert t.writes[5:] == [b"L", b"E"]
        assert t.close_calls == 1
        assert session.state is FlashState.SUCCEEDED
        assert result["pages"] == 2
        assert result["bytes"] == 200
        assert result["crc32"] == f"0x{image.crc32():08X}"

    @pytest.mark.parametrize("length", [1, 127, 128, 129, 256, 300, 1000])
    def test_page_segmentation(self, scripted, fast_timing, length):
        image = image_of(length)
        pages = -(-length // 128)
        t = scripted(session_replies(pages))
        Avr109Session(image, t, 128, timing=fast_timing).run()

        written = t.page_writes()
        assert len(written) == pages
        assert all(len(w) == 4 + 128 for w in written)
        payload = b"".join(w[4:] for w in written)
        assert payload[:length] == image.data
        assert payload[length:] == b"\xff" * (pages * 128 - length)

    def test_custom_page_size(self, scripted, fast_timing):
        t = scripted(session_replies(4))
        session = Avr109Session(image_of(250), t, 64, timing=fast_timing)
        session.run()
        assert [w[:4] for w in t.page_writes()] == [b"B\x00\x40F"] * 4
        assert session.cursor == PageCursor(byte_offset=256, word_address=128, page_index=4, page_count=4)

    def test_progress_before_each_page(self, scripted, fast_timing):
        seen = []
        t = scripted(session_replies(3))
        Avr109Session(image_of(300), t, 128, progress=seen.append, timing=fast_timing).run()
        assert seen == [0, 43, 85]

    def test_progress_rounds_half_up(self):
        assert progress_percent(0, 10) == 0
        assert progress_percent(1, 200) == 1
        assert progress_percent(64, 128) == 50
        assert progress_percent(1, 3) == 33

    def test_last_response_only_first_byte_matters(self, scripted, fast_timing):
        # ответ на L/E сверяется по первому байту; лишние байты не читаются
        t = scripted([b"CATERIN", b"\r", b"\r", b"\r", b"\rjunk"])
        Avr109Session(image_of(10), t, 128, timing=fast_timing).run()
        assert t.writes[-1] == b"E"


class TestRetries:

    def test_identity_desync(self, scripted, fast_timing):
        t = scripted([b"AVRBOOT"] * 4)
        session = Avr109Session(image_of(10), t, 128, timing=fast_timing, retry_limit=3)
        with pytest.raises(ProtocolDesync) as exc:
            session.run()
        assert exc.value.state is FlashState.AWAITING_IDENTITY
        assert exc.value.expected == b"CATERIN"
        assert exc.value.actual == b"AVRBOOT"
        assert exc.value.phase == "handshake"
        # 'S' повторяется при каждой неудаче
        assert t.writes == [b"S"] * 4
        assert t.close_calls == 1
        assert session.state is FlashState.FAILED

    def test_no_page_without_mode_ack(self, scripted, fast_timing):
        t = scripted([b"CATERIN", b"x", b"x", b"x", b"x"])
        with pytest.raises(ProtocolDesync) as exc:
            Avr109Session(image_of(10), t, 128, timing=fast_timing, retry_limit=3).run()
        assert exc.value.state is FlashState.AWAITING_MODE_ACK
        assert t.page_writes() == []
        assert t.writes == [b"S", b"P"]

    def test_no_second_page_without_ack(self, scripted, fast_timing):
        t = scripted([b"CATERIN", b"\r", b"\r", b"?", b"?"])
        session = Avr109Session(image_of(300), t, 128, timing=fast_timing, retry_limit=1)
        with pytest.raises(ProtocolDesync) as exc:
            session.run()
        assert len(t.page_writes()) == 1
        assert session.cursor.byte_offset == 128
        assert session.cursor.word_address == 64
        assert exc.value.where() == "page 1 of 3 (word address 0x0040)"

    def test_mismatch_then_ack_recovers(self, scripted, fast_timing):
        t = scripted([b"CATERIN", b"\r", b"\r", b"?", b"\r", b"\r"])
        session = Avr109Session(image_of(10), t, 128, timing=fast_timing, retry_limit=1)
        session.run()
        assert session.state is FlashState.SUCCEEDED
        # повтор не пересылает страницу
        assert len(t.page_writes()) == 1
        assert t.writes[-2:] == [b"L", b"E"]

    def test_retry_counter_is_per_state(self, scripted, fast_timing):
        t = scripted([b"CATERIN", b"?", b"\r", b"?", b"\r", b"?", b"\r", b"?", b"\r"])
        session = Avr109Session(image_of(10), t, 128, timing=fast_timing, retry_limit=1)
        session.run()
        assert session.state is FlashState.SUCCEEDED

    def test_nack_then_silence_in_page_ack(self, scripted, fast_timing):
        t = scripted([b"CATERIN", b"\r", b"\r", b"?"], when_done="silent")
        with pytest.raises(ProtocolDesync) as exc:
            Avr109Session(image_of(300), t, 128, timing=fast_timing).run()
        assert exc.value.state is FlashState.AWAITING_PAGE_ACK
        assert exc.value.expected == b"\r"
        assert exc.value.actual == b"?"
        assert exc.value.where() == "page 1 of 3 (word address 0x0040)"
        assert len(t.page_writes()) == 1
        assert t.close_calls == 1

    def test_short_identity_reply(self, scripted, fast_timing):
        t = scripted([b"?"], when_done="silent")
        with pytest.raises(ProtocolDesync) as exc:
            Avr109Session(image_of(10), t, 128, timing=fast_timing).run()
        assert exc.value.state is FlashState.AWAITING_IDENTITY
        assert exc.value.expected == b"CATERIN"
        assert exc.value.actual == b"?"
        assert t.writes == [b"S"]

    def test_acked_state_forgets_earlier_nack(self, scripted, fast_timing):
        # "?" на P, затем CR; молчание после A уже обычный таймаут
        t = scripted([b"CATERIN", b"?", b"\r"], when_done="silent")
        with pytest.raises(ProtocolTimeout) as exc:
            Avr109Session(image_of(10), t, 128, timing=fast_timing).run()
        assert exc.value.state is FlashState.AWAITING_PAGE_ACK


class TestTerminalFailures:

    def test_closed_early_in_final_page_ack(self, scripted, fast_timing):
        t = scripted([b"CATERIN", b"\r", b"\r", b"\r"], when_done="close")
        session = Avr109Session(image_of(200), t, 128, timing=fast_timing)
        with pytest.raises(TransportClosedEarly) as exc:
            session.run()
        assert exc.value.state is FlashState.AWAITING_FINAL_PAGE_ACK
        assert t.close_calls == 1
        assert session.state is FlashState.FAILED

    def test_timeout_in_page_ack(self, scripted, fast_timing):
        t = scripted([b"CATERIN", b"\r"], when_done="silent")
        with pytest.raises(ProtocolTimeout) as exc:
            Avr109Session(image_of(200), t, 128, timing=fast_timing).run()
        assert exc.value.state is FlashState.AWAITING_PAGE_ACK
        assert exc.value.timeout == fast_timing.read_timeout
        assert t.close_calls == 1

    def test_timeout_in_identity(self, scripted, fast_timing):
        t = scripted([], when_done="silent")
        with pytest.raises(ProtocolTimeout) as exc:
            Avr109Session(image_of(10), t, 128, timing=fast_timing).run()
        assert exc.value.state is FlashState.AWAITING_IDENTITY
        assert t.close_calls == 1

    def test_write_error_has_page_context(self, scripted, fast_timing):
        # записи: S, P, A, B(1), B(2) <- обрыв
        t = scripted(session_replies(3), fail_on_write=4)
        with pytest.raises(TransportError) as exc:
            Avr109Session(image_of(300), t, 128, timing=fast_timing).run()
        assert exc.value.state is FlashState.AWAITING_PAGE_ACK
        assert exc.value.page == 2
        assert exc.value.pages == 3
        assert "page 2 of 3" in str(exc.value)
        assert t.close_calls == 1

    def test_transport_error_gets_state(self, fast_timing):
        class Broken:
            closed = 0
            def write(self, data):
                raise TransportError("port vanished")
            def read(self, size, timeout):
                return None
            def close(self):
                self.closed += 1

        t = Broken()
        with pytest.raises(TransportError) as exc:
            Avr109Session(image_of(10), t, 128, timing=fast_timing).run()
        assert exc.value.state is FlashState.AWAITING_IDENTITY
        assert exc.value.reason == "port vanished"
        assert t.closed == 1


class TestCancellation:

    def test_cancel_before_start(self, scripted, fast_timing):
        cancel = threading.Event()
        cancel.set()
        t = scripted(session_replies(1))
        with pytest.raises(FlashCancelled):
            Avr109Session(image_of(10), t, 128, timing=fast_timing, cancel=cancel).run()
        assert t.writes == []
        assert t.close_calls == 1

    def test_cancel_between_pages(self, scripted, fast_timing):
        cancel = threading.Event()

        def progress(percent):
            if percent > 0:
                cancel.set()

        t = scripted(session_replies(3))
        with pytest.raises(FlashCancelled) as exc:
            Avr109Session(image_of(300), t, 128, progress=progress,
                          timing=fast_timing, cancel=cancel).run()
        assert exc.value.state is FlashState.AWAITING_PAGE_ACK
        assert len(t.page_writes()) == 1
        assert t.close_calls == 1

    def test_cancel_while_waiting(self, scripted):
        from caterina_tool.boot_transport.avr109 import SessionTiming
        cancel = threading.Event()
        timer = threading.Timer(0.1, cancel.set)
        t = scripted([b"CATERIN"], when_done="silent")
        timing = SessionTiming(probe_delay=0, identity_settle=0, command_settle=0,
                               read_timeout=10, poll_interval=0.01)
        timer.start()
        try:
            with pytest.raises(FlashCancelled) as exc:
                Avr109Session(image_of(10), t, 128, timing=timing, cancel=cancel).run()
        finally:
            timer.cancel()
        assert exc.value.state is FlashState.AWAITING_MODE_ACK
        assert t.close_calls == 1

    def test_cancel_during_settle(self, scripted):
        from caterina_tool.boot_transport.avr109 import SessionTiming
        cancel = threading.Event()
        timer = threading.Timer(0.05, cancel.set)
        t = scripted([b"CATERIN"], when_done="silent")
        timing = SessionTiming(probe_delay=0, identity_settle=10, command_settle=0,
                               read_timeout=1, poll_interval=0.01)
        timer.start()
        try:
            with pytest.raises(FlashCancelled):
                Avr109Session(image_of(10), t, 128, timing=timing, cancel=cancel).run()
        finally:
            timer.cancel()
        assert t.writes == [b"S"]


class TestValidation:

    def test_empty_image(self, scripted):
        with pytest.raises(ValueError):
            Avr109Session(MemoryImage(b""), scripted([]))

    @pytest.mark.parametrize("page_size", [0, -2, 127, 0x10000])
    def test_bad_page_size(self, scripted, page_size):
        with pytest.raises(ValueError):
            Avr109Session(image_of(10), scripted([]), page_size)

    def test_state_phases(self):
        assert FlashState.AWAITING_IDENTITY.phase == "handshake"
        assert FlashState.AWAITING_MODE_ACK.phase == "handshake"
        assert FlashState.AWAITING_PAGE_ACK.phase == "page"
        assert FlashState.AWAITING_FINAL_PAGE_ACK.phase == "page"
        assert FlashState.AWAITING_LEAVE_ACK.phase == "exit"
        assert FlashState.SUCCEEDED.terminal and FlashState.FAILED.terminal
        assert not FlashState.AWAITING_PAGE_ACK.terminal
