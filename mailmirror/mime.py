"""Narrow interface over the standard library email package.

The sync core never parses messages itself; it calls parse() when a fetched
body is materialized for display, reply or forward.
"""

import email
import email.message
import email.policy
import email.utils
from dataclasses import dataclass, field
from datetime import datetime
from email.header import decode_header


@dataclass
class Attachment:
    filename: str
    content_type: str
    size: int


@dataclass
class ParsedMessage:
    message_id: str
    subject: str
    from_addr: str
    to_addrs: list[str]
    cc_addrs: list[str]
    date: datetime | None
    body_text: str
    attachments: list[Attachment] = field(default_factory=list)
    references: str = ""


def decode_mime_header(header: str | None) -> str:
    """Decode a MIME-encoded email header."""
    if header is None:
        return ""
    decoded_parts = decode_header(str(header))
    result = []
    for part, charset in decoded_parts:
        if isinstance(part, bytes):
            try:
                result.append(part.decode(charset or "utf-8", errors="replace"))
            except LookupError:
                result.append(part.decode("utf-8", errors="replace"))
        else:
            result.append(part)
    return "".join(result)


def _decode_part(part: email.message.Message) -> str | None:
    payload = part.get_payload(decode=True)
    if not isinstance(payload, bytes):
        return None
    charset = part.get_content_charset() or "utf-8"
    try:
        return payload.decode(charset, errors="replace")
    except LookupError:
        return payload.decode("utf-8", errors="replace")


def extract_body(msg: email.message.Message) -> str:
    """Extract the text body: first inline text/plain part, else first text/html."""
    if not msg.is_multipart():
        return _decode_part(msg) or ""
    for wanted in ("text/plain", "text/html"):
        for part in msg.walk():
            if part.get_content_type() != wanted:
                continue
            # Skip attachments - only get inline body text
            if "attachment" in part.get("Content-Disposition", ""):
                continue
            text = _decode_part(part)
            if text is not None:
                return text
    return ""


def extract_attachments(msg: email.message.Message) -> list[Attachment]:
    """List attachment names, types and decoded sizes."""
    attachments: list[Attachment] = []
    if not msg.is_multipart():
        return attachments

    for part in msg.walk():
        if part.is_multipart():
            continue
        content_type = part.get_content_type()
        disposition = part.get("Content-Disposition", "")
        filename = part.get_filename()

        # Skip main body parts (inline text/html without filename)
        if (
            not filename
            and "attachment" not in disposition
            and content_type in ("text/plain", "text/html")
        ):
            continue

        if not filename:
            name_param = part.get_param("name")
            if isinstance(name_param, str):
                filename = name_param
            elif isinstance(name_param, tuple):
                # Encoded parameter: (charset, language, value)
                filename = name_param[2]
        if not filename:
            continue

        payload = part.get_payload(decode=True)
        attachments.append(Attachment(
            filename=decode_mime_header(filename),
            content_type=content_type,
            size=len(payload) if isinstance(payload, bytes) else 0,
        ))
    return attachments


def _addresses(msg: email.message.Message, header: str) -> list[str]:
    values = [decode_mime_header(v) for v in msg.get_all(header, [])]
    return [
        email.utils.formataddr((name, addr)) if name else addr
        for name, addr in email.utils.getaddresses(values)
        if addr
    ]


def parse(raw: bytes) -> ParsedMessage:
    """Parse raw RFC822 bytes into envelope fields and a structured body."""
    msg = email.message_from_bytes(raw)
    date = None
    if msg.get("Date"):
        try:
            date = email.utils.parsedate_to_datetime(msg["Date"])
        except (TypeError, ValueError):
            date = None
    return ParsedMessage(
        message_id=(msg.get("Message-ID") or "").strip(),
        subject=decode_mime_header(msg.get("Subject")),
        from_addr=decode_mime_header(msg.get("From")),
        to_addrs=_addresses(msg, "To"),
        cc_addrs=_addresses(msg, "Cc"),
        date=date,
        body_text=extract_body(msg),
        attachments=extract_attachments(msg),
        references=(msg.get("References") or "").strip(),
    )


@dataclass
class Draft:
    """A message being composed."""
    to: list[str]
    subject: str = ""
    body: str = ""
    cc: list[str] = field(default_factory=list)
    bcc: list[str] = field(default_factory=list)
    in_reply_to: str = ""
    references: str = ""

    @property
    def recipients(self) -> list[str]:
        return [addr for _, addr in email.utils.getaddresses(self.to + self.cc + self.bcc) if addr]

    def to_message(self, sender: str) -> email.message.EmailMessage:
        """Build the MIME message. Bcc recipients are not written to the headers."""
        if not self.recipients:
            raise ValueError("Draft has no recipients")
        msg = email.message.EmailMessage(policy=email.policy.SMTP)
        msg["From"] = sender
        msg["To"] = ", ".join(self.to)
        if self.cc:
            msg["Cc"] = ", ".join(self.cc)
        msg["Subject"] = self.subject
        msg["Date"] = email.utils.formatdate(localtime=True)
        domain = email.utils.parseaddr(sender)[1].rpartition("@")[2] or None
        msg["Message-ID"] = email.utils.make_msgid(domain=domain)
        if self.in_reply_to:
            msg["In-Reply-To"] = self.in_reply_to
            msg["References"] = self.references or self.in_reply_to
        msg.set_content(self.body)
        return msg


def _quote(text: str) -> str:
    return "\n".join(f"> {line}" if line else ">" for line in text.splitlines())


def reply_to(parsed: ParsedMessage, *, reply_all: bool = False, self_addr: str = "") -> Draft:
    """Start a reply draft to a parsed message."""
    subject = parsed.subject
    if not subject.lower().startswith("re:"):
        subject = f"Re: {subject}"
    to = [parsed.from_addr] if parsed.from_addr else []
    cc: list[str] = []
    if reply_all:
        own = self_addr.lower()
        cc = [
            addr for addr in parsed.to_addrs + parsed.cc_addrs
            if email.utils.parseaddr(addr)[1].lower() != own
        ]
    references = " ".join(r for r in (parsed.references, parsed.message_id) if r)
    header = f"On {parsed.date:%a, %d %b %Y %H:%M}, {parsed.from_addr} wrote:" if parsed.date else (
        f"{parsed.from_addr} wrote:"
    )
    return Draft(
        to=to,
        cc=cc,
        subject=subject,
        body=f"\n\n{header}\n{_quote(parsed.body_text)}\n",
        in_reply_to=parsed.message_id,
        references=references,
    )


def forward(parsed: ParsedMessage, to: list[str] | None = None) -> Draft:
    """Start a forward draft carrying the original text inline."""
    subject = parsed.subject
    if not subject.lower().startswith(("fwd:", "fw:")):
        subject = f"Fwd: {subject}"
    lines = [
        "",
        "---------- Forwarded message ----------",
        f"From: {parsed.from_addr}",
        f"Subject: {parsed.subject}",
    ]
    if parsed.date:
        lines.append(f"Date: {parsed.date:%a, %d %b %Y %H:%M}")
    if parsed.to_addrs:
        lines.append(f"To: {', '.join(parsed.to_addrs)}")
    lines += ["", parsed.body_text]
    return Draft(to=list(to or []), subject=subject, body="\n".join(lines))
