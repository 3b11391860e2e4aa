"""
Deterministic entity extraction for finance chat queries.

Every family is extracted independently from the query text, with one exception:
the spending category is matched first and merchant matching skips phrases that
are keywords of that category.
"""

import re
from typing import Any, Dict, List, Optional

from ..models.catalog import CARD_PATTERNS, CATEGORY_PATTERNS, MERCHANT_PATTERNS, SCREEN_REGISTRY, TIME_PATTERNS
from ..utils.logging_config import get_logger
from ..utils.text_extraction import extract_amount, find_money_token

logger = get_logger(__name__)


def _phrase_regex(phrase: str) -> re.Pattern:
    body = r'\s+'.join(re.escape(part) for part in phrase.lower().split())
    return re.compile(rf'\b{body}\b', re.IGNORECASE)


# Longest phrases first so "food shopping" wins over "food"; ties keep table order
_CATEGORY_MATCHERS = [(category, _phrase_regex(pattern))
                      for category, pattern in sorted(((c, p) for c, patterns in CATEGORY_PATTERNS.items() for p in patterns),
                                                      key=lambda item: len(item[1]),
                                                      reverse=True)]

_RECOMMENDATION_WORDS = re.compile(r'\b(best|which|what|suggest|card|for)\b', re.IGNORECASE)
_PLACE_PATTERN = re.compile(r'(?:at|for|from|in)\s+([A-Z][a-z]+(?:\s+[A-Z][a-z]+)*)')
_CARD_PHRASE_PATTERN = re.compile(r'(?:my|the)\s+([A-Za-z\s]+?)\s+card', re.IGNORECASE)
_TIME_MATCHERS = [(key, re.compile(pattern, re.IGNORECASE)) for key, pattern in TIME_PATTERNS]

_TAG_PATTERN = re.compile(r'(\btag(?:ged)?(?:\s+(?:as|with))?\s+)([^.,;]+)', re.IGNORECASE)
_TAG_COLON_PATTERN = re.compile(r'\btags?\s*[:=]\s*([^.,;]+)', re.IGNORECASE)
_HASHTAG_PATTERN = re.compile(r'#([a-z0-9_\-]+)', re.IGNORECASE)

# (pattern, attribute) pairs; multi-word and specific phrasing precede generic single words
_ATTRIBUTE_RULES = [
    (r'\bgrace\s+period\b|\binterest\s+free\s+days\b|\bdays\s+grace\b', 'grace_period'),
    (r'\bstatement\s+close\b|\bstatement\s+cycle\s+end\b|\bstatement\s+end\b|\bclose\s+date\b', 'statement_close'),
    (r'\bstatement\s+start\b|\bstatement\s+cycle\s+start\b|\bcycle\s+start\b', 'statement_start'),
    (r'\bpayment\s+due\s+date\b|\bdue\s+dates?\b|\bwhen\s+.*due\b', 'due_date'),
    (r'\bpayment\s+amounts?\b|\bhow\s+much\s+.*pay\b|\bminimum\s+payment\b|\bamount\s+.*pay\b', 'payment_amount'),
    (r'\bcredit\s+limits?\b|\bmaximum\s+credit\b', 'credit_limit'),
    (r'\bavailable\s+credit\b|\bremaining\s+credit\b|\bfree\s+credit\b', 'available_credit'),
    (r'\bcard\s+network\b|\bpayment\s+network\b', 'card_network'),
    (r'\bcard\s+name\b|\bcard\s+title\b|\bname\s+of\s+(?:my|this)\s+card\b|\bwhat\s+(?:is|was)\s+(?:the|my)\s+card\b', 'card_name'),
    (r'\bcard\s+type\b|\bkind\s+.*card\b|\bcard\s+kind\b', 'card_type'),
    (r'\b(nickname|card\s+nickname|nick|alias)\b', 'nickname'),
    (r'\bannual\s+fee\b|\byearly\s+fee\b', 'annual_fee'),
    (r'\bapr\b|\bannual\s+percentage\s+rate\b|\binterest\s+rate\b', 'apr'),
    (r'\b(balance|balances|debt|owe|owing|outstanding)\b', 'balance'),
    (r'\b(available.*credit|available|can.*spend|remaining.*credit|free.*credit)\b', 'available_credit'),
    (r'\b(utilization|usage|percent.*used|using|credit.*usage)\b', 'utilization'),
    (r'\b(rewards?|points?|cashback|miles|cash\s+back)\b', 'rewards'),
    (r'\blimit\b', 'credit_limit'),
    (r'\bfee\b', 'annual_fee'),
    (r'\bgrace\b', 'grace_period'),
    (r'\b(issuer|bank|banking|card\s+issuer|financial\s+institution)\b', 'issuer'),
    (r'\bnetwork\b', 'card_network'),
    (r'\b(visa|mastercard|amex|discover)\s+cards?\b', 'card_network'),
]
_ATTRIBUTE_MATCHERS = [(re.compile(pattern), attribute) for pattern, attribute in _ATTRIBUTE_RULES]

_QUERY_TYPE_RULES = [
    (re.compile(r'lowest|highest|best|worst|better|worse|compare'), 'comparison'),
    (re.compile(r'show|list|all|what.*cards|my cards'), 'listing'),
    (re.compile(r'which card|should i|recommend|use at|use for'), 'recommendation'),
    (re.compile(r'when|due|upcoming|next'), 'timeframe'),
    (re.compile(r'how much|total|calculate|sum'), 'calculation'),
]

# "longest grace period" means the highest value, "shortest" the lowest
_MODIFIER_RULES = [
    ('lowest', 'lowest'),
    ('highest', 'highest'),
    ('longest', 'highest'),
    ('shortest', 'lowest'),
    ('best', 'best'),
    ('worst', 'worst'),
    ('total', 'total'),
    ('average', 'average'),
    ('most', 'most'),
    ('least', 'least'),
]

_ACTION_WORDS = ['show', 'list', 'find', 'calculate', 'compare', 'tell', 'what', 'which']

_WITH_BALANCE_RULES = [
    re.compile(r'\b(?:only\s+)?(?:with|having|that have|that has)\s+balance'),
    re.compile(r'\bcards?\s+(?:with|having)\s+balance'),
]
_IMPLICIT_BALANCE = re.compile(r'\bbalances?(?:\s+only)?(?!\s+(?:is|are|of|zero|no))')
_ZERO_BALANCE_RULES = [
    re.compile(r'\bzero\s+balance'),
    re.compile(r'\bno\s+balance'),
    re.compile(r'\b(?:paid\s+off|paid\s+in\s+full|no\s+debt|all\s+paid)'),
    re.compile(r'\$0\s+balance'),
    re.compile(r'\b0\s+(?:dollar|dollars)\s+balance'),
    re.compile(r'\b0\s+balance|\bbalance.*\b0\b'),
]

# Checked in order; the multi-word network name goes first and normalizes to the alias
_NETWORK_RULES = [
    (re.compile(r'\bamerican\s+express\b'), 'Amex'),
    (re.compile(r'\bvisa\b'), 'Visa'),
    (re.compile(r'\bmaster\s*cards?\b'), 'Mastercard'),
    (re.compile(r'\bamex\b'), 'Amex'),
    (re.compile(r'\bdiscover\b'), 'Discover'),
]

_ISSUER_RULES = [
    (re.compile(r'\bchase\b'), 'Chase'),
    (re.compile(r'\bciti\b'), 'Citi'),
    (re.compile(r'\bcitibank\b'), 'Citi'),
    (re.compile(r'\bamerican\s+express\b'), 'American Express'),
    (re.compile(r'\bamex\b'), 'American Express'),
    (re.compile(r'\bcapital\s+one\b'), 'Capital One'),
    (re.compile(r'\bdiscover\b'), 'Discover'),
    (re.compile(r'\bbank\s+of\s+america\b'), 'Bank of America'),
    (re.compile(r'\bbofa\b'), 'Bank of America'),
    (re.compile(r'\bwells\s+fargo\b'), 'Wells Fargo'),
]

_DISTINCT_KEYWORDS = re.compile(r'\b(different|various|varied|diverse|breakdown|distribution|categorization)\b')
_DISTINCT_PHRASES = [
    re.compile(r'what\s+are\s+(?:the|all|different|various|types|kinds)'),
    re.compile(r'what\s+(?:networks|issuers|types|kinds)\s+(?:do\s+i\s+have|are|in)'),
    re.compile(r'how\s+many\s+(?:different|various|types)'),
    re.compile(r'number\s+of\s+(?:different|various)'),
    re.compile(r'all\s+(?:the|of\s+the)\s+(?:different|various|types|kinds|issuers|networks)'),
    re.compile(r'grouped\s+by'),
    re.compile(r'breakdown\s+(?:by|of)'),
    re.compile(r'distribution\s+(?:by|of)'),
]
_DISTINCT_FIELDS = [
    ('issuer', ['issuer', 'issuers']),
    ('card_network', ['network', 'networks', 'card network', 'payment network', 'credit card network']),
    ('card_type', ['type', 'types', 'card type', 'card types', 'kinds of cards', 'kinds']),
]

_AND_PATTERNS = [re.compile(r'\band\b'), re.compile(r'\s+&\s+'), re.compile(r'\s+\+\s+'), re.compile(r',.*(?:with|that|and)')]
_OR_PATTERNS = [re.compile(r'\bor\b'), re.compile(r'\s+\|\s+'), re.compile(r',\s*or')]
_FILTER_INDICATORS = [
    re.compile(r'\b(with|having|that have|that has)\b'),
    re.compile(r'\b(over|above|greater than|more than)\b'),
    re.compile(r'\b(under|below|less than)\b'),
    re.compile(r'\b(equal to|exactly)\b'),
]

_GROUP_PATTERNS = [
    re.compile(r'\b(?:grouped by|group by|organized by|by)\s+(\w+)'),
    re.compile(r'breakdown\s+(?:by|of)\s+(\w+)'),
    re.compile(r'distribution\s+(?:by|of)\s+(\w+)'),
]
_GROUP_FIELDS = [
    ('issuer', ['issuer', 'issuers', 'bank', 'banks']),
    ('card_network', ['network', 'networks', 'card network']),
    ('card_type', ['type', 'types', 'card type']),
]

_AGGREGATION_OPERATIONS = [
    ('sum', ['total', 'sum', 'add up', 'sum of', 'total of', 'combined', 'together']),
    ('avg', ['average', 'avg', 'mean', 'typical']),
    ('count', ['how many', 'number of', 'count', 'how much']),
    ('min', ['minimum', 'min', 'lowest', 'smallest', 'least']),
    ('max', ['maximum', 'max', 'highest', 'largest', 'most']),
]
_AGGREGATION_FIELDS = [
    ('current_balance', ['balance', 'balances', 'debt', 'owed', 'amount due']),
    ('apr', ['apr', 'interest rate', 'rate', 'percentage']),
    ('credit_limit', ['limit', 'credit limit', 'max credit']),
    ('utilization', ['utilization', 'usage', 'used']),
]


def _first_keyword(text: str, table: List[tuple]) -> Optional[str]:
    for name, keywords in table:
        for keyword in keywords:
            if re.search(rf'\b{re.escape(keyword)}\b', text):
                return name
    return None


class EntityExtractor:
    """Extract merchant, category, amounts, timeframe, tags and query semantics from text."""

    def extract(self, query: str) -> Dict[str, Any]:
        """Extract all entity families from a query.

        Args:
            query: Raw user query

        Returns:
            Entity dict; absent families are None (tags is always a list)
        """
        query = query or ''
        lower_query = query.lower()

        category = self.extract_category(lower_query)
        entities = {
            'merchant': self.extract_merchant(query, category),
            'category': category,
            'card_name': self.extract_card_name(query),
            'screen_name': self.extract_screen_name(lower_query),
            'timeframe': self.extract_timeframe(lower_query),
            'amount': self.extract_amount(query),
            'tags': self.extract_tags(lower_query),
            'is_remember_command': bool(re.match(r'tag\b', lower_query) or re.search(r'\bremember\b', lower_query)),
            'query_type': self.extract_query_type(lower_query),
            'attribute': self.extract_attribute(lower_query),
            'modifier': self.extract_modifier(lower_query),
            'action': self.extract_action(lower_query),
            'balance_filter': self.extract_balance_filter(lower_query),
            'network_value': self.extract_network_value(lower_query),
            'issuer_value': self.extract_issuer_value(lower_query),
            'distinct_query': self.extract_distinct_query(lower_query),
            'compound_operators': self.extract_compound_operators(lower_query),
            'grouping': self.extract_grouping(lower_query),
            'aggregation': self.extract_aggregation(lower_query)
        }

        logger.debug(f'Extracted entities from "{query}": {format_entities_for_log(entities)}')
        return entities

    def extract_category(self, lower_query: str) -> Optional[str]:
        for category, matcher in _CATEGORY_MATCHERS:
            if matcher.search(lower_query):
                return category

        # Bare merchant names that imply a category in recommendation questions
        if 'store' not in lower_query and 'shopping' not in lower_query and _RECOMMENDATION_WORDS.search(lower_query):
            if 'costco' in lower_query:
                return 'warehouse'
            if 'uber' in lower_query or 'lyft' in lower_query:
                return 'transit'

        return None

    def extract_merchant(self, query: str, category: Optional[str] = None) -> Optional[str]:
        lower_query = query.lower()
        category_keywords = {keyword.lower() for keyword in CATEGORY_PATTERNS.get(category, [])} if category else set()

        for merchant, patterns in MERCHANT_PATTERNS.items():
            for pattern in patterns:
                if pattern in category_keywords:
                    continue
                if pattern in lower_query:
                    return merchant

        # Capitalized place name after a preposition in the original casing
        match = _PLACE_PATTERN.search(query)
        if match:
            return match.group(1).lower()

        return None

    def extract_card_name(self, query: str) -> Optional[str]:
        lower_query = query.lower()
        for pattern in CARD_PATTERNS:
            if pattern in lower_query:
                return pattern

        match = _CARD_PHRASE_PATTERN.search(query)
        if match:
            return match.group(1).strip()
        return None

    def extract_screen_name(self, lower_query: str) -> Optional[str]:
        for screen in SCREEN_REGISTRY:
            if str(screen['screen_name']).lower() in lower_query:
                return screen['screen_path']
            for keyword in screen['keywords']:
                if keyword.lower() in lower_query:
                    return screen['screen_path']
        return None

    def extract_timeframe(self, lower_query: str) -> Optional[Dict[str, Any]]:
        for key, matcher in _TIME_MATCHERS:
            match = matcher.search(lower_query)
            if match:
                if match.groups() and match.group(1):
                    return {'type': key, 'value': int(match.group(1))}
                return {'type': key}
        return None

    def extract_amount(self, query: str) -> Optional[float]:
        amount = extract_amount(query, min_digits=3, allow_k=True)
        if amount:
            return amount
        return find_money_token(query)

    def extract_tags(self, lower_query: str) -> List[str]:
        raw_tags = []

        for match in _TAG_PATTERN.finditer(lower_query):
            raw = re.sub(r'[\'"]', '', match.group(2))
            raw = re.sub(r'\band\b|&', ',', raw)
            raw_tags.extend(part.strip() for part in raw.split(','))

        for match in _TAG_COLON_PATTERN.finditer(lower_query):
            raw_tags.extend(part.strip() for part in match.group(1).split(','))

        raw_tags.extend(match.group(1) for match in _HASHTAG_PATTERN.finditer(lower_query))

        tags = []
        for raw in raw_tags:
            tag = re.sub(r'\s+', ' ', re.sub(r'[^a-z0-9\s\-]', '', raw, flags=re.IGNORECASE).strip())
            if tag and tag not in tags:
                tags.append(tag)
        return tags

    def extract_query_type(self, lower_query: str) -> Optional[str]:
        for matcher, query_type in _QUERY_TYPE_RULES:
            if matcher.search(lower_query):
                return query_type
        return None

    def extract_attribute(self, lower_query: str) -> Optional[str]:
        for matcher, attribute in _ATTRIBUTE_MATCHERS:
            if matcher.search(lower_query):
                return attribute
        return None

    def extract_modifier(self, lower_query: str) -> Optional[str]:
        for word, modifier in _MODIFIER_RULES:
            if re.search(rf'\b{word}\b', lower_query):
                return modifier
        return None

    def extract_action(self, lower_query: str) -> Optional[str]:
        for word in _ACTION_WORDS:
            if re.search(rf'\b{word}\b', lower_query):
                return word
        return None

    def extract_balance_filter(self, lower_query: str) -> Optional[str]:
        """Cards with an outstanding balance versus paid-off cards; the two never co-occur."""
        if any(rule.search(lower_query) for rule in _WITH_BALANCE_RULES):
            return 'with_balance'

        if _IMPLICIT_BALANCE.search(lower_query) and re.search(r'list|show|cards?', lower_query):
            if not re.search(r'\bzero\b', lower_query) and not re.search(r'\bno\b.*balance', lower_query):
                return 'with_balance'

        if any(rule.search(lower_query) for rule in _ZERO_BALANCE_RULES):
            return 'zero_balance'

        return None

    def extract_network_value(self, lower_query: str) -> Optional[str]:
        for matcher, network in _NETWORK_RULES:
            if matcher.search(lower_query):
                return network
        return None

    def extract_issuer_value(self, lower_query: str) -> Optional[str]:
        for matcher, issuer in _ISSUER_RULES:
            if matcher.search(lower_query):
                return issuer
        return None

    def extract_distinct_query(self, lower_query: str) -> Optional[Dict[str, Any]]:
        """Detect "what are the different issuers" style questions.

        Requires a strong signal (a distinct keyword or phrase), so plain listing
        requests such as "show my cards" are not distinct queries.
        """
        has_keyword = bool(_DISTINCT_KEYWORDS.search(lower_query))
        has_phrase = any(phrase.search(lower_query) for phrase in _DISTINCT_PHRASES)
        if not has_keyword and not has_phrase:
            return None

        field = _first_keyword(lower_query, _DISTINCT_FIELDS)
        return {'is_distinct': True, 'field': field or 'issuer'}

    def extract_compound_operators(self, lower_query: str) -> Dict[str, List[str]]:
        operators = ['AND' for pattern in _AND_PATTERNS if pattern.search(lower_query)]
        operators.extend('OR' for pattern in _OR_PATTERNS if pattern.search(lower_query))

        if not operators:
            filter_count = sum(len(pattern.findall(lower_query)) for pattern in _FILTER_INDICATORS)
            if filter_count >= 2:
                operators = ['AND'] * (filter_count - 1)

        return {'logical_operators': operators}

    def extract_grouping(self, lower_query: str) -> Optional[Dict[str, str]]:
        for pattern in _GROUP_PATTERNS:
            match = pattern.search(lower_query)
            if match and match.group(1):
                matched_field = match.group(1).lower()
                for field, keywords in _GROUP_FIELDS:
                    if any(matched_field in keyword or keyword in matched_field for keyword in keywords):
                        return {'group_by': field}
                return {'group_by': matched_field}
        return None

    def extract_aggregation(self, lower_query: str) -> Optional[Dict[str, Optional[str]]]:
        operation = _first_keyword(lower_query, _AGGREGATION_OPERATIONS)
        if not operation:
            return None
        return {'operation': operation, 'field': _first_keyword(lower_query, _AGGREGATION_FIELDS)}


def format_entities_for_log(entities: Optional[Dict[str, Any]]) -> str:
    """Compact "key=value" rendering of the entities that carry a value."""
    if not entities:
        return '{}'
    parts = []
    for key, value in entities.items():
        if value is None or value is False or value == [] or value == {}:
            continue
        if isinstance(value, dict) and value.get('logical_operators') == []:
            continue
        parts.append(f'{key}={value}')
    return '{' + ', '.join(parts) + '}'


_default_extractor = EntityExtractor()


def extract_entities(query: str) -> Dict[str, Any]:
    """Extract entities with the shared stateless extractor."""
    return _default_extractor.extract(query)
