# api_projects/expressions.py
"""
Expressions de filtrage et de remplacement de texte.

Grammaire prise en charge (celle des filtres WMS et des sous-ensembles de couche) :

    expr       := or_expr
    or_expr    := and_expr ( OR and_expr )*
    and_expr   := not_expr ( AND not_expr )*
    not_expr   := NOT not_expr | comparison
    comparison := sum ( op sum | [NOT] LIKE sum | [NOT] ILIKE sum
                        | [NOT] IN ( sum , ... ) | IS [NOT] NULL )?
    sum        := term ( ( + | - | || ) term )*
    term       := factor ( ( * | / | % ) factor )*
    factor     := "champ" | champ | 'texte' | nombre | NULL | TRUE | FALSE
                | SOUNDEX ( expr ) | ( expr ) | - factor

Exemple:
    FilterExpression('"type" = \\'R\\' AND "surface" > 100').matches(feature)
"""

from typing import Any, Callable, List, Optional, Tuple
import re

_TOKEN_RE = re.compile(r"""
    \s*(?:
        (?P<number>(?:\d+\.\d*|\.\d+|\d+)(?:[eE][-+]?\d+)?)
      | (?P<string>'(?:[^']|'')*')
      | (?P<quoted>"(?:[^"]|"")*")
      | (?P<op><=|>=|!=|<>|\|\||[=<>+\-*/%(),])
      | (?P<word>[A-Za-z_][\w.]*)
    )""", re.VERBOSE)

KEYWORDS = {'AND', 'OR', 'NOT', 'IN', 'LIKE', 'ILIKE', 'IS', 'NULL', 'TRUE', 'FALSE'}


class ExpressionError(ValueError):
    pass


def tokenize(text: str) -> List[Tuple[str, str]]:
    tokens = []
    pos = 0
    text = text.rstrip()
    while pos < len(text):
        match = _TOKEN_RE.match(text, pos)
        if not match or match.end() == pos:
            raise ExpressionError(f"Caractère inattendu à la position {pos} : {text[pos:pos + 10]!r}")
        pos = match.end()
        kind = match.lastgroup
        value = match.group(kind)
        if kind == 'word' and value.upper() in KEYWORDS:
            kind, value = 'keyword', value.upper()
        elif kind == 'string':
            value = value[1:-1].replace("''", "'")
        elif kind == 'quoted':
            value = value[1:-1].replace('""', '"')
        tokens.append((kind, value))
    return tokens


def soundex(value: str) -> str:
    """Code Soundex américain (4 caractères)."""
    codes = {
        **dict.fromkeys('BFPV', '1'), **dict.fromkeys('CGJKQSXZ', '2'),
        **dict.fromkeys('DT', '3'), 'L': '4', **dict.fromkeys('MN', '5'), 'R': '6',
    }
    letters = [c for c in str(value).upper() if c.isalpha()]
    if not letters:
        return ''
    result = letters[0]
    previous = codes.get(letters[0], '')
    for c in letters[1:]:
        code = codes.get(c, '')
        if code and code != previous:
            result += code
        if c not in 'HW':
            previous = code
    return (result + '000')[:4]


def _like_regex(pattern: str, ignore_case: bool):
    regex = ''.join('.*' if c == '%' else '.' if c == '_' else re.escape(c) for c in str(pattern))
    return re.compile(f'^{regex}$', re.IGNORECASE | re.DOTALL if ignore_case else re.DOTALL)


def _coerce_pair(a, b):
    """Aligne les types pour la comparaison : nombres si possible, texte sinon."""
    if isinstance(a, (int, float)) and not isinstance(b, (int, float)):
        try:
            return a, float(b)
        except (TypeError, ValueError):
            return str(a), str(b)
    if isinstance(b, (int, float)) and not isinstance(a, (int, float)):
        try:
            return float(a), b
        except (TypeError, ValueError):
            return str(a), str(b)
    return a, b


_COMPARATORS = {
    '=': lambda a, b: a == b,
    '!=': lambda a, b: a != b,
    '<>': lambda a, b: a != b,
    '<': lambda a, b: a < b,
    '<=': lambda a, b: a <= b,
    '>': lambda a, b: a > b,
    '>=': lambda a, b: a >= b,
}

Evaluator = Callable[[Any], Any]


class _Parser:
    def __init__(self, tokens):
        self.tokens = tokens
        self.pos = 0
        self.referenced_fields = set()

    def peek(self, offset=0) -> Optional[Tuple[str, str]]:
        index = self.pos + offset
        return self.tokens[index] if index < len(self.tokens) else None

    def accept(self, kind, value=None) -> bool:
        token = self.peek()
        if token and token[0] == kind and (value is None or token[1] == value):
            self.pos += 1
            return True
        return False

    def expect(self, kind, value=None):
        if not self.accept(kind, value):
            found = self.peek()
            raise ExpressionError(f"{value or kind} attendu, trouvé {found[1] if found else 'fin'}")

    def parse(self) -> Evaluator:
        node = self.or_expr()
        if self.peek() is not None:
            raise ExpressionError(f"Élément inattendu : {self.peek()[1]}")
        return node

    def or_expr(self) -> Evaluator:
        node = self.and_expr()
        while self.accept('keyword', 'OR'):
            left, right = node, self.and_expr()
            node = lambda f, l=left, r=right: bool(l(f)) or bool(r(f))
        return node

    def and_expr(self) -> Evaluator:
        node = self.not_expr()
        while self.accept('keyword', 'AND'):
            left, right = node, self.not_expr()
            node = lambda f, l=left, r=right: bool(l(f)) and bool(r(f))
        return node

    def not_expr(self) -> Evaluator:
        if self.accept('keyword', 'NOT'):
            inner = self.not_expr()
            return lambda f: not inner(f)
        return self.comparison()

    def comparison(self) -> Evaluator:
        left = self.sum()
        token = self.peek()
        if token is None:
            return left

        if token[0] == 'op' and token[1] in _COMPARATORS:
            self.pos += 1
            compare, right = _COMPARATORS[token[1]], self.sum()

            def evaluate(f):
                a, b = left(f), right(f)
                if a is None or b is None:
                    return False
                a, b = _coerce_pair(a, b)
                try:
                    return compare(a, b)
                except TypeError:
                    return compare(str(a), str(b))
            return evaluate

        negate = False
        if token == ('keyword', 'NOT') and self.peek(1) and self.peek(1)[1] in ('LIKE', 'ILIKE', 'IN'):
            self.pos += 1
            negate = True

        if self.accept('keyword', 'LIKE') or self.accept('keyword', 'ILIKE'):
            ignore_case = self.tokens[self.pos - 1][1] == 'ILIKE'
            pattern = self.sum()

            def evaluate(f):
                value, expected = left(f), pattern(f)
                if value is None or expected is None:
                    return False
                return bool(_like_regex(expected, ignore_case).match(str(value))) != negate
            return evaluate

        if self.accept('keyword', 'IN'):
            self.expect('op', '(')
            items = [self.sum()]
            while self.accept('op', ','):
                items.append(self.sum())
            self.expect('op', ')')

            def evaluate(f):
                value = left(f)
                if value is None:
                    return False
                found = False
                for item in items:
                    a, b = _coerce_pair(value, item(f))
                    if a == b:
                        found = True
                        break
                return found != negate
            return evaluate

        if negate:
            raise ExpressionError('LIKE, ILIKE ou IN attendu après NOT')

        if self.accept('keyword', 'IS'):
            is_not = self.accept('keyword', 'NOT')
            self.expect('keyword', 'NULL')
            return lambda f: (left(f) is None) != is_not

        return left

    def sum(self) -> Evaluator:
        node = self.term()
        while True:
            token = self.peek()
            if not token or token[0] != 'op' or token[1] not in ('+', '-', '||'):
                return node
            self.pos += 1
            left, right, op = node, self.term(), token[1]
            node = lambda f, l=left, r=right, op=op: _arithmetic(op, l(f), r(f))

    def term(self) -> Evaluator:
        node = self.factor()
        while True:
            token = self.peek()
            if not token or token[0] != 'op' or token[1] not in ('*', '/', '%'):
                return node
            self.pos += 1
            left, right, op = node, self.factor(), token[1]
            node = lambda f, l=left, r=right, op=op: _arithmetic(op, l(f), r(f))

    def factor(self) -> Evaluator:
        token = self.peek()
        if token is None:
            raise ExpressionError('Expression incomplète')
        kind, value = token
        self.pos += 1

        if kind == 'number':
            number = float(value) if any(c in value for c in '.eE') else int(value)
            return lambda f: number
        if kind == 'string':
            return lambda f: value
        if kind in ('quoted', 'word'):
            if kind == 'word' and self.peek() == ('op', '('):
                return self.function(value)
            self.referenced_fields.add(value)
            return lambda f: _attribute(f, value)
        if kind == 'keyword' and value == 'NULL':
            return lambda f: None
        if kind == 'keyword' and value in ('TRUE', 'FALSE'):
            flag = value == 'TRUE'
            return lambda f: flag
        if token == ('op', '('):
            node = self.or_expr()
            self.expect('op', ')')
            return node
        if token == ('op', '-'):
            inner = self.factor()
            return lambda f: None if inner(f) is None else -inner(f)
        raise ExpressionError(f"Élément inattendu : {value}")

    def function(self, name: str) -> Evaluator:
        self.expect('op', '(')
        argument = self.or_expr()
        self.expect('op', ')')
        name = name.upper()
        if name == 'SOUNDEX':
            return lambda f: soundex(argument(f) or '')
        if name == 'UPPER':
            return lambda f: None if argument(f) is None else str(argument(f)).upper()
        if name == 'LOWER':
            return lambda f: None if argument(f) is None else str(argument(f)).lower()
        raise ExpressionError(f"Fonction non prise en charge : {name}")


def _attribute(feature, name):
    if feature is None:
        return None
    attributes = getattr(feature, 'attributes', feature)
    return attributes.get(name)


def _arithmetic(op, a, b):
    if a is None or b is None:
        return None
    if op == '||':
        return f'{a}{b}'
    a, b = _coerce_pair(a, b)
    try:
        if op == '+':
            return a + b
        if op == '-':
            return a - b
        if op == '*':
            return a * b
        if op == '/':
            return a / b if b else None
        if op == '%':
            return a % b if b else None
    except TypeError:
        return None
    return None


class FilterExpression:
    """Expression compilée une fois, évaluée sur chaque entité."""

    def __init__(self, text: str):
        self.text = text or ''
        self.error = ''
        self._evaluator = None
        self.referenced_fields = set()
        if not self.text.strip():
            return
        try:
            parser = _Parser(tokenize(self.text))
            self._evaluator = parser.parse()
            self.referenced_fields = parser.referenced_fields
        except ExpressionError as e:
            self.error = str(e)

    def has_parser_error(self) -> bool:
        return bool(self.error)

    def evaluate(self, feature) -> Any:
        if self._evaluator is None:
            return None
        return self._evaluator(feature)

    def matches(self, feature) -> bool:
        """Une expression vide accepte toutes les entités."""
        if self._evaluator is None:
            return not self.error
        return bool(self._evaluator(feature))

    def __repr__(self):
        return f'<FilterExpression {self.text!r}>'


_TEMPLATE_RE = re.compile(r'\[%(.*?)%\]', re.DOTALL)


def replace_expression_text(template: str, feature) -> str:
    """Remplace chaque bloc ``[% expression %]`` par sa valeur pour l'entité."""
    def replace(match):
        expression = FilterExpression(match.group(1).strip())
        if expression.has_parser_error():
            return ''
        value = expression.evaluate(feature)
        return '' if value is None else str(value)

    return _TEMPLATE_RE.sub(replace, template or '')
