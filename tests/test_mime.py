"""Tests for message parsing and composition."""

import email
from email.mime.application import MIMEApplication
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText

import pytest

from mailmirror.mime import (
    Draft,
    decode_mime_header,
    extract_attachments,
    extract_body,
    forward,
    parse,
    reply_to,
)


def multipart_message():
    msg = MIMEMultipart()
    msg["From"] = "Alice <alice@example.com>"
    msg["To"] = "me@example.com, Bob <bob@example.com>"
    msg["Cc"] = "carol@example.com"
    msg["Subject"] = "=?UTF-8?B?SGVsbG8gV29ybGQ=?="
    msg["Date"] = "Wed, 01 May 2024 09:30:00 +0000"
    msg["Message-ID"] = "<abc@example.com>"
    msg["References"] = "<root@example.com>"
    msg.attach(MIMEText("Plain body text", "plain"))
    msg.attach(MIMEText("<p>HTML body</p>", "html"))
    attachment = MIMEApplication(b"%PDF-1.4 data", "pdf", Name="report.pdf")
    attachment["Content-Disposition"] = 'attachment; filename="report.pdf"'
    msg.attach(attachment)
    return msg


class TestDecodeMimeHeader:
    def test_plain(self):
        assert decode_mime_header("Simple Subject") == "Simple Subject"

    def test_none(self):
        assert decode_mime_header(None) == ""

    def test_mixed(self):
        assert decode_mime_header("Re: =?UTF-8?B?SGVsbG8=?= World") == "Re: Hello World"

    def test_unknown_charset(self):
        assert decode_mime_header("=?x-unknown?Q?caf=E9?=") == "caf\ufffd"


class TestExtract:
    def test_plain_text_message(self):
        msg = MIMEText("Just text", "plain")
        assert extract_body(msg) == "Just text"
        assert extract_attachments(msg) == []

    def test_prefers_plain_over_html(self):
        assert extract_body(multipart_message()) == "Plain body text"

    def test_falls_back_to_html(self):
        msg = MIMEMultipart()
        msg.attach(MIMEText("<p>Only HTML</p>", "html"))
        assert extract_body(msg) == "<p>Only HTML</p>"

    def test_skips_text_attachment(self):
        msg = MIMEMultipart()
        notes = MIMEText("attached notes", "plain")
        notes["Content-Disposition"] = 'attachment; filename="notes.txt"'
        msg.attach(notes)
        msg.attach(MIMEText("<p>Body</p>", "html"))
        assert extract_body(msg) == "<p>Body</p>"

    def test_attachments(self):
        [attachment] = extract_attachments(multipart_message())
        assert attachment.filename == "report.pdf"
        assert attachment.content_type == "application/pdf"
        assert attachment.size == len(b"%PDF-1.4 data")


class TestParse:
    def test_parse(self):
        parsed = parse(multipart_message().as_bytes())

        assert parsed.subject == "Hello World"
        assert parsed.from_addr == "Alice <alice@example.com>"
        assert parsed.to_addrs == ["me@example.com", "Bob <bob@example.com>"]
        assert parsed.cc_addrs == ["carol@example.com"]
        assert parsed.message_id == "<abc@example.com>"
        assert parsed.references == "<root@example.com>"
        assert parsed.date.year == 2024
        assert parsed.body_text == "Plain body text"
        assert [a.filename for a in parsed.attachments] == ["report.pdf"]

    def test_bad_date(self):
        parsed = parse(b"Subject: x\r\nDate: not a date\r\n\r\nbody\r\n")
        assert parsed.date is None
        assert parsed.body_text.strip() == "body"


class TestDraft:
    def test_recipients_include_bcc(self):
        draft = Draft(to=["Bob <bob@example.com>"], cc=["carol@example.com"], bcc=["dave@example.com"])
        assert draft.recipients == ["bob@example.com", "carol@example.com", "dave@example.com"]

    def test_to_message(self):
        draft = Draft(to=["bob@example.com"], bcc=["dave@example.com"], subject="Hi", body="Hello")

        msg = draft.to_message("Me <me@example.com>")
        parsed = email.message_from_bytes(msg.as_bytes())

        assert parsed["From"] == "Me <me@example.com>"
        assert parsed["To"] == "bob@example.com"
        assert parsed["Bcc"] is None
        assert parsed["Message-ID"].endswith("@example.com>")
        assert parsed.get_payload(decode=True).decode().strip() == "Hello"

    def test_reply_headers(self):
        draft = Draft(to=["bob@example.com"], in_reply_to="<a@x>", references="<r@x> <a@x>")
        msg = draft.to_message("me@example.com")
        assert msg["In-Reply-To"] == "<a@x>"
        assert msg["References"] == "<r@x> <a@x>"

    def test_no_recipients(self):
        with pytest.raises(ValueError, match="no recipients"):
            Draft(to=[]).to_message("me@example.com")


class TestReplyForward:
    def test_reply(self):
        parsed = parse(multipart_message().as_bytes())

        draft = reply_to(parsed)

        assert draft.subject == "Re: Hello World"
        assert draft.to == ["Alice <alice@example.com>"]
        assert draft.cc == []
        assert draft.in_reply_to == "<abc@example.com>"
        assert draft.references == "<root@example.com> <abc@example.com>"
        assert "> Plain body text" in draft.body
        assert "Alice <alice@example.com> wrote:" in draft.body

    def test_reply_all_excludes_self(self):
        parsed = parse(multipart_message().as_bytes())

        draft = reply_to(parsed, reply_all=True, self_addr="ME@example.com")

        assert draft.cc == ["Bob <bob@example.com>", "carol@example.com"]

    def test_reply_keeps_existing_prefix(self):
        parsed = parse(b"Subject: RE: status\r\nFrom: a@b.c\r\n\r\nok\r\n")
        assert reply_to(parsed).subject == "RE: status"

    def test_forward(self):
        parsed = parse(multipart_message().as_bytes())

        draft = forward(parsed, to=["dave@example.com"])

        assert draft.subject == "Fwd: Hello World"
        assert draft.to == ["dave@example.com"]
        assert "---------- Forwarded message ----------" in draft.body
        assert "From: Alice <alice@example.com>" in draft.body
        assert "Plain body text" in draft.body
