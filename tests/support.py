import time

from caterina_tool.firmware.ihex import HexRecord, RecordType

class ScriptedTransport:
    """Отдаёт заранее заготовленные ответы по порядку, записывает всё, что ему прислали."""

    def __init__(self, replies, when_done="close", fail_on_write=None):
        self.replies = [bytes(r) for r in replies]
        self.when_done = when_done          # "close" -> конец потока, "silent" -> молчание
        self.fail_on_write = fail_on_write  # номер записи (с 0), на которой бросить OSError
        self.writes = []
        self.close_calls = 0

    def write(self, data):
        if self.fail_on_write is not None and len(self.writes) == self.fail_on_write:
            raise OSError("cable pulled")
        self.writes.append(bytes(data))

    def read(self, size, timeout):
        if self.replies:
            head = self.replies[0]
            out, rest = head[:size], head[size:]
            if rest:
                self.replies[0] = rest
            else:
                self.replies.pop(0)
            return out
        if self.when_done == "close":
            return None
        time.sleep(timeout)
        return b""

    def close(self):
        self.close_calls += 1

    def page_writes(self):
        return [w for w in self.writes if w[:1] == b"B"]

def hex_text(*records, eol="\n"):
    lines = [r.to_line() for r in records]
    lines.append(HexRecord.build(RecordType.END_OF_FILE).to_line())
    return eol.join(lines) + eol

def data_record(address, data):
    return HexRecord.build(RecordType.DATA, address, data)

def session_replies(pages):
    """CATERIN, CR на P, CR на A, CR на каждую страницу, CR на L."""
    return [b"CATERIN", b"\r", b"\r"] + [b"\r"] * pages + [b"\r"]

