ERRORS = {
  "E_LAYOUT_MISSING": "Container file missing",
  "E_BANNER": "Section banner missing or invalid",
  "E_HEADER_RECORD": "Header record invalid",
  "E_TRUNCATED": "Container truncated",
  "E_UNKNOWN_TAG": "Unknown record tag",
  "E_RECORD_LENGTH": "Write record length does not match payload length",
  "E_WRITE_ALIGN": "Write record not block aligned",
  "E_WRITE_ORDER": "Write records overlap or are out of order",
  "E_WRITE_BOUNDS": "Write record extends past declared image size",
  "E_TERMINATOR": "End tag missing or followed by trailing bytes",
}
