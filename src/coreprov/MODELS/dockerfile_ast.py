"""
Models for the Dockerfile Abstract Syntax Tree.
"""
from typing import List, Optional
from pydantic import BaseModel

class Instruction(BaseModel):
    """
    Represents a single instruction in a Dockerfile.
    """
    instruction: str
    arguments: List[str]
    raw: str
    # 1-based physical lines the instruction spans, continuations included.
    start_line: int = 0
    end_line: int = 0

class DockerfileAST(BaseModel):
    """
    Represents the complete Abstract Syntax Tree of a Dockerfile.
    """
    instructions: List[Instruction] = []

    def first_from(self) -> Optional[Instruction]:
        """
        Returns the first FROM instruction, or None if the Dockerfile has none.
        """
        for inst in self.instructions:
            if inst.instruction == "FROM":
                return inst
        return None
