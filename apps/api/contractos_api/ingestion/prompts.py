from __future__ import annotations

import json

from ..spec_io import load_json_schema

_BASE = """You extract structured data from contract-management documents (contracts, payment \
statements, technical memoranda) written mostly in Spanish.

Return ONLY one JSON object that follows the JSON Schema below. Use null for anything the \
document does not state; never invent values. Amounts keep their decimal precision and are \
JSON numbers, not strings.

Chilean number format: a period separates thousands and a comma separates decimals. \
"1.234,56" is 1234.56, "209,81" is 209.81.

Add "confidence" (0..1, your overall confidence) and "provenance": a list of \
{"field", "pages", "excerpt"} entries for the most important fields."""

_TYPE_HINTS = {
    "contract": """This is a CONTRACT (or addendum). Extract the contract code, client, contractor, \
total budget in UF, dates, the task breakdown (task_number, name, budget_uf), contractual risks \
and obligations.""",
    "edp": """This is a PAYMENT STATEMENT (EDP, estado de pago). Extract the contract code, the EDP \
number, the period, the period amount in UF, the UF rate and CLP amount, status ("approved" when \
signed, otherwise "submitted"), accumulated amounts and every executed task with the UF spent in \
THIS period. Task numbers use dot notation ("1.2", not "1-2").""",
    "memo": """This is a TECHNICAL MEMORANDUM or report. Extract the contract code, title, date, \
author, a short summary, and any risks or obligations it raises.""",
    "unknown": """The document type is not known. Extract the contract code, title, date, author, a \
short summary, and any risks or obligations it mentions.""",
}


def system_prompt(document_type: str) -> str:
    schema = load_json_schema(document_type)
    hint = _TYPE_HINTS.get(document_type, _TYPE_HINTS["unknown"])
    return f"{_BASE}\n\n{hint}\n\nJSON Schema:\n{json.dumps(schema, ensure_ascii=False)}"


def markdown_user_prompt(document_type: str, filename: str, markdown: str) -> str:
    return (
        f"Filename: {filename}\n\n"
        f"The {document_type.upper()} document below was pre-parsed into Markdown.\n\n"
        f"MARKDOWN CONTENT:\n\n{markdown}"
    )


def document_user_prompt(document_type: str, filename: str) -> str:
    return f"Filename: {filename}\n\nAnalyse the attached PDF ({document_type.upper()}) and extract the structured data."
