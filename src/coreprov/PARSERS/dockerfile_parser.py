"""
Parsers for Dockerfiles, extracting instructions, arguments and source lines.
"""
import json
import re
from typing import List, Tuple
from ..MODELS.dockerfile_ast import DockerfileAST, Instruction

_INSTRUCTION_RE = re.compile(r'^\s*([A-Za-z]+)(?:\s+(.*))?$')


class DockerfileParser:
    """
    Parser for Dockerfile instructions.
    """
    def parse(self, dockerfile_path: str) -> List[Instruction]:
        """
        Parses a Dockerfile from a file path.

        Args:
            dockerfile_path (str): Path to the Dockerfile.

        Returns:
            List[Instruction]: List of parsed instructions.
        """
        with open(dockerfile_path, 'r') as f:
            content = f.read()
        return self.parse_from_string(content)

    def parse_ast(self, content: str) -> DockerfileAST:
        """
        Parses Dockerfile content into a DockerfileAST.
        """
        return DockerfileAST(instructions=self.parse_from_string(content))

    def parse_from_string(self, content: str) -> List[Instruction]:
        """
        Parses a Dockerfile from a string content.

        Each instruction records the physical line it starts on so callers can
        rewrite that line in the original text.

        Args:
            content (str): Content of the Dockerfile.

        Returns:
            List[Instruction]: List of parsed instructions.
        """
        instructions = []
        for start_line, end_line, text in self._logical_lines(content.splitlines()):
            match = _INSTRUCTION_RE.match(text)
            if not match:
                continue
            inst = match.group(1).upper()
            args_str = (match.group(2) or "").strip()
            instructions.append(Instruction(
                instruction=inst,
                arguments=self._split_arguments(inst, args_str),
                raw=text.strip(),
                start_line=start_line,
                end_line=end_line,
            ))
        return instructions

    @staticmethod
    def _logical_lines(lines: List[str]) -> List[Tuple[int, int, str]]:
        """
        Joins backslash continuations, skipping comment and blank lines.

        :return: (1-based start line, 1-based end line, joined text) for each logical line.
        """
        result = []
        i = 0
        while i < len(lines):
            line = lines[i]
            stripped = line.strip()
            if not stripped or stripped.startswith('#'):
                i += 1
                continue

            start = i + 1
            continued = line.rstrip().endswith('\\')
            text = line.rstrip()[:-1] if continued else line
            while continued and i + 1 < len(lines):
                i += 1
                nxt = lines[i]
                if not nxt.strip() or nxt.strip().startswith('#'):
                    continue
                continued = nxt.rstrip().endswith('\\')
                text += ' ' + (nxt.rstrip()[:-1] if continued else nxt).strip()
            end = i + 1
            result.append((start, end, text))
            i += 1
        return result

    @staticmethod
    def _split_arguments(inst: str, args_str: str) -> List[str]:
        if not args_str:
            return []

        # Exec form
        if args_str.startswith('[') and args_str.endswith(']'):
            try:
                parsed = json.loads(args_str)
                if isinstance(parsed, list):
                    return [str(a) for a in parsed]
            except json.JSONDecodeError:
                pass
            return [args_str]

        if inst == "ENV":
            if '=' in args_str:
                return re.findall(r'(\S+=\S+)', args_str)
            return args_str.split(None, 1)
        if inst == "FROM":
            # FROM [--platform=...] image [AS name]
            return args_str.split()
        return [args_str]
