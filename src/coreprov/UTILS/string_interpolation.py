"""
${VAR} expansion of configuration text.
"""
import re
from typing import Dict, List, Optional

_PLACEHOLDER = re.compile(r'\$\{(?P<name>[^}:]+)(?::(?P<op>[-+])(?P<word>[^}]*))?\}')


class EnvironmentInterpolator:
    """
    Expands ${VAR}, ${VAR:-default} (default when VAR is unset or empty) and
    ${VAR:+value} (value when VAR is set and non-empty).
    """
    @staticmethod
    def interpolate(template: str, context: Dict[str, str],
                    missing: Optional[List[str]] = None) -> str:
        """
        :param template: Text containing placeholders.
        :param context: Variable values.
        :param missing: Collects the names of unset plain ${VAR} placeholders,
                        which then expand to ''. Without it they raise.
        :raises KeyError: On an unset plain ${VAR} when missing is None.
        """
        def expand(match):
            name, op, word = match.group('name', 'op', 'word')
            value = context.get(name)
            if op == '-':
                return value or word
            if op == '+':
                return word if value else ''
            if value is None:
                if missing is None:
                    raise KeyError(f"Variable {name} not found in context")
                missing.append(name)
                return ''
            return value

        return _PLACEHOLDER.sub(expand, template)
