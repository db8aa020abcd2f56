# services/lootbox-bridge/app/bridge/schema_parser.py
"""
Parser for the TypeScript-ish client definition served by the lootbox server at /types.

The document looks like:

    export interface RpcClient {
      basic_memory: {
        write_memory(args: {
          title: string;
          tags?: string[];
        }): Promise<unknown>;
        list_notes(args: Record<string, never>): Promise<unknown>;
      };
    }

Only the parameter shapes are of interest. Everything that is not a string, number
or boolean (literal unions, object literals, unknown names) is reported as a string.
"""
from __future__ import annotations

import logging
import re
from typing import Dict, List, Optional, Tuple

from app.models.procedure_models import ParameterSpec, ParamType, RemoteProcedureDescriptor

logger = logging.getLogger("app.bridge.schema")

_NAMESPACE_RE = re.compile(r"^\s+(\w+):\s*\{\s*$")
_PROCEDURE_RE = re.compile(r"^\s+(\w+)\(args\s*:\s*(\{|Record\b)")
_DECLARATION_RE = re.compile(r"^(\w+)(\?)?\s*:\s*(.+)$", re.DOTALL)
_ARRAY_GENERIC_RE = re.compile(r"^(?:Readonly)?Array<\s*(.+?)\s*>$")
_COMMENT_RE = re.compile(r"/\*.*?\*/|//.*$")

_PRIMITIVES: Dict[str, ParamType] = {
    "string": ParamType.STRING,
    "number": ParamType.NUMBER,
    "boolean": ParamType.BOOLEAN,
}

# Stand-in for a nested object literal once its braces are collapsed.
_NESTED = "object"


def parse_procedures(text: str) -> List[RemoteProcedureDescriptor]:
    procedures: List[RemoteProcedureDescriptor] = []
    namespace: Optional[str] = None
    current: Optional[str] = None
    buffer: List[str] = []
    depth = 0

    for line in text.splitlines():
        if current is not None:
            if depth == 1 and _PROCEDURE_RE.match(line):
                logger.debug("Dropping unterminated parameter block for %s.%s", namespace, current)
                current, buffer, depth = None, [], 0
            else:
                chunk, depth = _collapse(_strip_comments(line), depth)
                buffer.append(chunk)
                if depth == 0:
                    procedures.append(_build(namespace or "", current, "\n".join(buffer)))
                    current, buffer = None, []
                continue

        ns_match = _NAMESPACE_RE.match(line)
        if ns_match:
            namespace = ns_match.group(1)
            continue

        proc_match = _PROCEDURE_RE.match(line)
        if proc_match and namespace:
            name = proc_match.group(1)
            if proc_match.group(2) == "Record":
                procedures.append(RemoteProcedureDescriptor(namespace=namespace, name=name))
                continue
            chunk, depth = _collapse(_strip_comments(line[proc_match.end():]), 1)
            if depth == 0:
                procedures.append(_build(namespace, name, chunk))
            else:
                current, buffer = name, [chunk]

    if current is not None:
        logger.debug("Dropping unterminated parameter block for %s.%s at end of input", namespace, current)

    return procedures


def _strip_comments(line: str) -> str:
    stripped = _COMMENT_RE.sub("", line)
    if stripped.lstrip().startswith(("*", "/*")):
        return ""
    return stripped


def _collapse(text: str, depth: int) -> Tuple[str, int]:
    """
    Keep only depth-1 text (the args literal itself). Nested literals become `object`.
    Returns the kept text and the depth after the line; 0 means the block closed.
    """
    kept: List[str] = []
    for ch in text:
        if ch == "{":
            depth += 1
            if depth == 2:
                kept.append(_NESTED)
            continue
        if ch == "}":
            depth -= 1
            if depth == 0:
                break
            continue
        if depth == 1:
            kept.append(ch)
    return "".join(kept), depth


def _split_declarations(body: str) -> List[str]:
    parts: List[str] = []
    current: List[str] = []
    angle = 0
    for ch in body:
        if ch == "<":
            angle += 1
        elif ch == ">" and angle > 0:
            angle -= 1
        if ch in ";,\n" and angle == 0:
            parts.append("".join(current))
            current = []
            continue
        current.append(ch)
    parts.append("".join(current))
    return [p.strip() for p in parts if p.strip()]


def _resolve_type(expr: str) -> Tuple[ParamType, bool]:
    members = [m.strip() for m in expr.split("|")]
    members = [m for m in members if m and m not in ("undefined", "null")]
    if len(members) != 1:
        return ParamType.STRING, False

    token = members[0]
    is_array = False
    generic = _ARRAY_GENERIC_RE.match(token)
    if generic:
        token, is_array = generic.group(1), True
    elif token.endswith("[]"):
        token, is_array = token[:-2].strip(), True
    if token.startswith("(") and token.endswith(")"):
        token = token[1:-1].strip()

    resolved = _PRIMITIVES.get(token)
    if resolved is None:
        if token == _NESTED:
            logger.debug("Nested object parameter coerced to string")
        resolved = ParamType.STRING
    return resolved, is_array


def _build(namespace: str, name: str, body: str) -> RemoteProcedureDescriptor:
    parameters: Dict[str, ParameterSpec] = {}
    for decl in _split_declarations(body):
        m = _DECLARATION_RE.match(decl)
        if not m:
            continue
        pname, optional, type_expr = m.group(1), m.group(2) == "?", m.group(3)
        ptype, is_array = _resolve_type(type_expr)
        parameters[pname] = ParameterSpec(type=ptype, is_array=is_array, is_optional=optional)
    return RemoteProcedureDescriptor(namespace=namespace, name=name, parameters=parameters)
