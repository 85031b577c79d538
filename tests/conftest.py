"""
Shared fixtures for epubsync tests.
"""

import pytest

from epubsync.models import Granularity, PageInput, SyncRecord, TextFragment


PAGE_ONE = """<?xml version="1.0" encoding="utf-8"?>
<html xmlns="http://www.w3.org/1999/xhtml" xmlns:epub="http://www.idpf.org/2007/ops">
<head><title>Page 1</title></head>
<body>
  <p id="page1_p1"><span id="page1_p1_s1"><span id="page1_p1_s1_w1">Call</span> <span id="page1_p1_s1_w2">me</span> <span id="page1_p1_s1_w3">Ishmael.</span></span> <span id="page1_p1_s2"><span id="page1_p1_s2_w1">Some</span> <span id="page1_p1_s2_w2">years</span> <span id="page1_p1_s2_w3">ago.</span></span></p>
  <p id="page1_p2"><span id="page1_p2_s1"><span id="page1_p2_s1_w1">Never</span> <span id="page1_p2_s1_w2">mind</span> <span id="page1_p2_s1_w3">how.</span></span></p>
</body>
</html>
"""

PAGE_TWO = """<?xml version="1.0" encoding="utf-8"?>
<html xmlns="http://www.w3.org/1999/xhtml" xmlns:epub="http://www.idpf.org/2007/ops">
<body>
  <p id="page2_p1"><span id="page2_p1_s1"><span id="page2_p1_s1_w1">Having</span> <span id="page2_p1_s1_w2">little</span> <span id="page2_p1_s1_w3">money.</span></span></p>
</body>
</html>
"""


class FakeClock:
    """Manually advanced clock whose async sleep moves time forward."""

    def __init__(self, now: float = 0.0):
        self.now = now
        self.sleeps = []

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds

    async def sleep(self, seconds: float):
        self.sleeps.append(seconds)
        self.now += seconds


def make_fragment(fragment_id, text="abc", page=1, order=0, granularity=Granularity.SENTENCE):
    return TextFragment(
        id=fragment_id,
        text=text,
        granularity=granularity,
        page_number=page,
        order=order,
    )


def make_record(block_id, start, end, page=1, job_id=1, should_read=True, notes=None):
    return SyncRecord(
        pdf_document_id=7,
        conversion_job_id=job_id,
        block_id=block_id,
        page_number=page,
        start_time=start,
        end_time=end,
        audio_file_path="/audio/book.mp3",
        notes=notes,
        should_read=should_read,
    )


@pytest.fixture
def page_one():
    return PAGE_ONE


@pytest.fixture
def page_two():
    return PAGE_TWO


@pytest.fixture
def pages():
    return [
        PageInput(page_number=1, xhtml=PAGE_ONE),
        PageInput(page_number=2, xhtml=PAGE_TWO),
    ]


@pytest.fixture
def clock():
    return FakeClock()
