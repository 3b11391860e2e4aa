"""
Static catalogues: spending-category and merchant keywords, card names, time phrases,
app screens, and the intent definitions with their exemplar queries.
"""

from typing import Dict, List

# Reward categories, checked before merchants so "travel at costco" keeps both
CATEGORY_PATTERNS: Dict[str, List[str]] = {
    'dining': [
        'dining', 'dining out', 'restaurant', 'restaurants', 'restaurant dining', 'eating out', 'eat out', 'food', 'food dining',
        'dinner', 'lunch', 'breakfast', 'takeout', 'take out', 'delivery', 'food delivery', 'fast food', 'fastfood'
    ],
    'groceries': [
        'grocery', 'groceries', 'grocery store', 'grocery stores', 'supermarket', 'supermarkets', 'food shopping', 'food store',
        'food stores', 'grocery shopping', 'market', 'grocery market'
    ],
    'gas': [
        'gas', 'gas station', 'gas stations', 'fuel', 'fuel station', 'fuel stations', 'gasoline', 'petrol', 'ev charging',
        'electric vehicle charging', 'charging station', 'charging stations', 'refueling'
    ],
    'travel': [
        'travel', 'traveling', 'travelling', 'trip', 'trips', 'vacation', 'vacations', 'flight', 'flights', 'airline', 'airlines',
        'airfare', 'airfare booking', 'hotel', 'hotels', 'lodging', 'accommodation', 'accommodations', 'airbnb', 'booking',
        'expedia', 'priceline', 'travel booking', 'cruise', 'cruises', 'resort', 'resorts'
    ],
    'entertainment': [
        'entertainment', 'movies', 'movie', 'movie theater', 'movie theatre', 'theater', 'theatre', 'cinema', 'cinemas', 'concert',
        'concerts', 'events', 'live events', 'sports events', 'sporting events', 'tickets', 'event tickets', 'show', 'shows',
        'musical', 'musicals'
    ],
    'streaming': [
        'streaming', 'streaming service', 'streaming services', 'streaming platform', 'subscriptions', 'subscription',
        'video streaming', 'music streaming', 'netflix', 'spotify', 'hulu', 'prime video', 'disney plus', 'disney+', 'apple tv',
        'hbo max', 'paramount plus', 'peacock', 'youtube tv', 'pandora', 'siriusxm', 'sirius xm'
    ],
    'drugstores': [
        'drugstore', 'drugstores', 'drug store', 'drug stores', 'pharmacy', 'pharmacies', 'cvs', 'walgreens', 'rite aid',
        'pharmacy store', 'health pharmacy'
    ],
    'home_improvement': [
        'home improvement', 'home improvements', 'home improvement store', 'hardware', 'hardware store', 'hardware stores',
        'home depot', 'home depot store', 'lowes', 'lowes store', 'menards', 'ace hardware', 'true value', 'home renovation',
        'home repair', 'home remodeling', 'diy', 'do it yourself'
    ],
    'department_stores': [
        'department store', 'department stores', 'shopping', 'retail store', 'retail stores', 'mall', 'shopping mall',
        'shopping center', 'macy', 'macys', 'nordstrom', 'kohls', 'jcpenney', 'jc penney', 'dillards', 'belk', 'sears'
    ],
    'transit': [
        'transit', 'public transit', 'public transportation', 'transportation', 'taxi', 'taxis', 'cab', 'cabs', 'uber', 'lyft',
        'rideshare', 'ride share', 'ride sharing', 'ride-hailing', 'commute', 'commuting', 'metro', 'subway', 'bus', 'bus fare',
        'train', 'train fare', 'public transport'
    ],
    'utilities': [
        'utilities', 'utility', 'utility bill', 'utility bills', 'utility payment', 'electricity', 'electric bill', 'electric bills',
        'power', 'power bill', 'water', 'water bill', 'water bills', 'sewer', 'sewer bill', 'internet', 'internet bill',
        'internet service', 'internet provider', 'phone bill', 'phone bills', 'cell phone', 'cell phone bill', 'cable',
        'cable bill', 'cable tv', 'internet and cable'
    ],
    'warehouse': [
        'warehouse', 'warehouse store', 'warehouse stores', 'warehouse club', 'warehouse clubs', 'costco', 'sams club', 'sams',
        "sam's club", 'bj', 'bjs', "bj's wholesale", 'wholesale club', 'wholesale clubs', 'bulk store', 'bulk stores'
    ],
    'office_supplies': [
        'office supplies', 'office supply', 'office supply store', 'office supply stores', 'office depot', 'staples', 'stationery',
        'stationary', 'office store', 'office stores', 'business supplies'
    ],
    'insurance': [
        'insurance', 'auto insurance', 'car insurance', 'vehicle insurance', 'health insurance', 'medical insurance',
        'home insurance', 'homeowners insurance', 'renters insurance', 'rental insurance', 'life insurance', 'insurance premium',
        'insurance payment', 'insurance payments'
    ]
}

# Canonical merchant -> phrases that name it
MERCHANT_PATTERNS: Dict[str, List[str]] = {
    'costco': ['costco', 'costco wholesale'],
    'walmart': ['walmart', 'wal-mart', 'wal mart'],
    'target': ['target', 'target store'],
    'whole foods': ['whole foods', 'wholefoods', 'whole food'],
    'trader joes': ['trader joes', 'trader joe', 'traders joes'],
    'safeway': ['safeway'],
    'kroger': ['kroger'],
    'gas': ['gas station', 'chevron', 'shell', 'exxon', 'bp', '76'],
    'restaurant': ['restaurant', 'chipotle', 'mcdonalds', 'starbucks', 'cafe'],
    'grocery': ['supermarket', 'food shopping'],
    'travel': ['flight', 'hotel', 'airline', 'airbnb', 'booking', 'expedia'],
    'amazon': ['amazon', 'amazon.com'],
    'uber': ['uber', 'lyft', 'rideshare'],
    'online': ['online', 'internet', 'web shopping', 'e-commerce']
}

CARD_PATTERNS: List[str] = [
    'chase', 'sapphire', 'freedom', 'amex', 'american express', 'gold', 'platinum', 'citi', 'citibank', 'double cash', 'custom cash',
    'discover', 'capital one', 'venture', 'quicksilver', 'bank of america', 'wells fargo'
]

# Ordered; the first matching phrase decides. Numeric forms capture the count.
TIME_PATTERNS: List[tuple] = [
    ('today', r'today|tonight|right now'),
    ('tomorrow', r'tomorrow'),
    ('this_week', r'this week|within.*week'),
    ('next_week', r'next week'),
    ('this_month', r'this month|within.*month'),
    ('days', r'(?:in|next|within)\s*(\d+)\s*days?'),
    ('weeks', r'(?:in|next|within)\s*(\d+)\s*weeks?'),
]

# App screens a navigation request can resolve to
SCREEN_REGISTRY: List[Dict[str, object]] = [
    {
        'screen_key': 'finchat_chat',
        'screen_name': 'FinChat',
        'screen_path': 'chat',
        'keywords': ['chat', 'assistant', 'ai', 'ask', 'question', 'help', 'talk']
    },
    {
        'screen_key': 'my_wallet',
        'screen_name': 'My Wallet',
        'screen_path': 'cards',
        'keywords': [
            'wallet', 'cards', 'add card', 'card details', 'my cards', 'credit cards', 'manage cards', 'manage card', 'my card',
            'card detail', 'view card', 'card'
        ]
    },
    {
        'screen_key': 'payment_optimizer',
        'screen_name': 'Payment Optimizer',
        'screen_path': 'optimizer',
        'keywords': [
            'payment', 'optimizer', 'optimize', 'smart payments', 'payment strategy', 'minimize interest', 'pay down debt',
            'smart payment', 'pay'
        ]
    },
    {
        'screen_key': 'expense_feed',
        'screen_name': 'Expense Feed',
        'screen_path': 'expenses',
        'keywords': ['expenses', 'transactions', 'spending', 'feed', 'purchase history']
    },
    {
        'screen_key': 'dashboard',
        'screen_name': 'Dashboard',
        'screen_path': 'dashboard',
        'keywords': ['dashboard', 'overview', 'summary', 'home', 'main']
    }
]

INTENT_CATEGORIES: Dict[str, List[str]] = {
    'TASK': [
        'card_recommendation', 'query_card_data', 'split_payment', 'add_card', 'remove_card', 'navigate_screen', 'remember_memory',
        'recall_memory', 'reminder_settings'
    ],
    'GUIDANCE': ['debt_guidance', 'money_coaching', 'help'],
    'CHAT': ['chit_chat']
}

# Handler output for these intents is returned verbatim, never reworded
CRITICAL_INTENTS = frozenset(['query_card_data', 'card_recommendation', 'remember_memory', 'recall_memory', 'split_payment'])

INTENT_DEFINITIONS: Dict[str, Dict[str, object]] = {
    'query_card_data': {
        'name': 'Query Card Data',
        'description': 'User wants to see information about their credit cards',
        'capabilities': [
            'List all cards in wallet', 'Show card balances and credit limits', 'Display APR rates (lowest/highest/all)',
            'Show payment due dates', 'Calculate credit utilization', 'Show available credit',
            'Recommend best card for specific merchant or category', 'Display payment amounts'
        ],
        'examples': ['What cards do I have?', 'Show my balances', 'Which card has the lowest APR?', 'When are my payments due?']
    },
    'add_card': {
        'name': 'Add Card',
        'description': 'User wants to add a new credit card to their wallet',
        'capabilities': ['Navigate to card management screen', 'Guide user through adding a new card'],
        'examples': ['Add new card', 'I want to add a credit card', 'I got a new card']
    },
    'remove_card': {
        'name': 'Remove Card',
        'description': 'User wants to remove/delete a card from their wallet',
        'capabilities': ['Delete a specific card', 'Navigate to card management to remove cards'],
        'examples': ['Delete this card', 'Remove my Chase card', 'I want to remove a card']
    },
    'split_payment': {
        'name': 'Split Payment / Payment Optimization',
        'description': 'User wants to optimize how to split a payment across multiple cards',
        'capabilities': [
            'Calculate optimal payment distribution across cards', 'Minimize interest by prioritizing high APR cards',
            'Recommend payment amounts per card', 'Navigate to Payment Optimizer screen'
        ],
        'examples': ['Split $1500 between cards', 'How should I split 1000?', 'Optimize payment of $800']
    },
    'navigate_screen': {
        'name': 'Navigate Screen',
        'description': 'User wants to navigate to a different screen in the app',
        'capabilities': [
            'Navigate to: My Wallet (cards)', 'Navigate to: Payment Optimizer (optimizer)', 'Navigate to: Dashboard (dashboard)',
            'Navigate to: Expense Feed (expenses)'
        ],
        'examples': ['Take me to my wallet', 'Open payment optimizer', 'Show dashboard']
    },
    'help': {
        'name': 'Help / General Inquiry',
        'description': 'User needs help or wants to know what the assistant can do',
        'capabilities': [
            "Explain the assistant's features", 'Guide user on how to use the app',
            'Answer general questions about credit card management'
        ],
        'examples': ['What can you do?', 'Help me', 'How can you help?']
    },
    'card_recommendation': {
        'name': 'Card Recommendation / Purchase Optimization',
        'description': 'User wants personalized recommendation for which card to use for a specific purchase',
        'capabilities': [
            'Recommend best card for specific merchant or category', 'Maximize rewards (points, cashback, miles)',
            'Minimize interest charges (APR optimization)', 'Optimize cash flow timing (float strategy)',
            'Compare all strategies for a purchase', 'Explain reasoning behind recommendations'
        ],
        'examples': [
            'Which card should I use at Costco?', 'Best card for groceries?', 'I want to maximize rewards for dining',
            'Compare all strategies for this purchase'
        ]
    },
    'reminder_settings': {
        'name': 'Reminder Controls',
        'description': 'User wants to manage payment reminders or notification preferences',
        'capabilities': [
            'Mute or pause payment reminders', 'Resume reminders after they were muted', 'List upcoming reminders',
            'Adjust reminder schedules or channels'
        ],
        'examples': ['Mute all reminders', 'Pause payment notifications', 'Resume reminders']
    },
    'remember_memory': {
        'name': 'Save Memory or Note',
        'description': 'User wants to save a financial memory, note, or expense with tags for later recall',
        'capabilities': [
            'Store chat notes with tags', 'Associate optional amount, merchant, or category data', 'Acknowledge successful capture'
        ],
        'examples': [
            "Remember $80 for Danny's birthday gift, tag gifts", 'Save a note to check travel deals on Friday, tag travel',
            'Remember I paid $45 cash for lunch, tag dining'
        ]
    },
    'recall_memory': {
        'name': 'Recall Tagged Memories',
        'description': 'User wants to retrieve saved memories or notes by tag or timeframe',
        'capabilities': ['Search memories by tag', 'Filter by timeframe (this month, last week, etc.)', 'Summarize matching entries'],
        'examples': ['Show memories tagged gifts', 'What expenses did I tag dining this month?', 'Recall notes tagged travel deals']
    },
    'debt_guidance': {
        'name': 'Debt Guidance',
        'description': 'User wants a strategy to reduce or pay off credit card debt',
        'capabilities': [
            'Compare avalanche and snowball payoff methods', 'Prioritize which balance to pay first',
            'Estimate a payoff timeline', 'Suggest ways to reduce interest charges'
        ],
        'examples': ['How to reduce my debt', 'Should I use avalanche or snowball method', 'When will I be debt free']
    },
    'money_coaching': {
        'name': 'Money Coaching',
        'description': 'User wants financial education or credit best practices',
        'capabilities': [
            'Explain credit scores and utilization', 'Explain APR and grace periods', 'Share healthy credit card habits',
            'Discuss balance transfers and rewards strategy'
        ],
        'examples': ['How to improve my credit score', 'What is credit utilization', 'What is a grace period']
    },
    'chit_chat': {
        'name': 'Chit Chat',
        'description': 'User is greeting, thanking or making small talk',
        'capabilities': ['Respond warmly and briefly', 'Offer help when appropriate'],
        'examples': ['Hello', 'Thanks a lot', 'How are you']
    }
}

# Exemplar queries embedded into the intent index
INTENT_EXAMPLES: Dict[str, List[str]] = {
    'query_card_data': [
        'what cards do I have', 'show my cards', 'list my cards', 'list all my credit cards', 'show my balance',
        "what's my total balance", 'which card has the lowest APR', 'show me my highest interest card', 'when is my payment due',
        'when do I need to pay', "what's my credit utilization", 'how much credit am I using', 'show available credit',
        "what's my credit limit", 'how much do I owe', 'show me all card balances', 'list my payment due dates'
    ],
    'add_card': [
        'add new card', 'I want to add a credit card', 'create new card', 'add a card to my wallet', 'register a new credit card',
        'I got a new card'
    ],
    'remove_card': [
        'delete this card', 'remove my Chase card', 'get rid of this card', 'remove card from wallet', 'delete my credit card',
        'I want to remove a card'
    ],
    'split_payment': [
        'split $1500 between cards', 'distribute my budget', 'allocate 2000 across all cards', 'divide payment between cards',
        'how should I split 1000', 'optimize payment of $800'
    ],
    'navigate_screen': [
        'take me to my wallet', 'open payment optimizer', 'show dashboard', 'go to cards', 'navigate to expense feed',
        'open my wallet', 'show payment screen'
    ],
    'help': ['what can you do', 'help me', 'show features', 'what are your capabilities', 'how can you help'],
    'card_recommendation': [
        'which card should I use at Costco', 'best card for Target', 'what card for Whole Foods', 'which card at Starbucks',
        'best card for groceries', 'which card for dining', 'best card for gas', 'card for travel', 'maximize rewards for this purchase',
        'best cashback card for gas', 'which card has lowest interest for this purchase', 'avoid interest on this transaction',
        'which card has longest grace period for this purchase', 'best card for $500 purchase', 'compare all strategies for this purchase',
        'show all options for this purchase', 'recommend a card for this purchase', 'help me choose a card for shopping'
    ],
    'reminder_settings': [
        'mute all reminders', 'pause payment notifications', 'stop reminding me about payments', 'resume reminders',
        'turn payment reminders back on', 'show my reminder schedule', 'list my upcoming reminders'
    ],
    'remember_memory': [
        "remember $80 for danny's birthday gift tag gifts", 'save a note about paying $45 cash for lunch tag dining',
        'remember to check travel deals on friday tag travel', 'remember i paid daycare 400 tag childcare',
        'tag my purchase of 200 dollars for groceries', 'tag my walmart expense as household supplies'
    ],
    'recall_memory': [
        'show memories tagged gifts', 'what did i tag as dining this month', 'recall notes tagged travel',
        'list expenses tagged childcare', 'tell me what i tagged supplies last week'
    ],
    'debt_guidance': [
        'how to reduce my debt', 'how can I pay off my credit card debt', 'help me get out of debt',
        'should I use avalanche or snowball method', "what's the best debt payoff strategy", 'which balance should I pay first',
        'how to minimize interest charges', 'should I consolidate my debt', 'overwhelmed by credit card debt',
        'how long to pay off my debt', 'when will I be debt free'
    ],
    'money_coaching': [
        'how to improve my credit score', 'what affects credit score', 'what is credit utilization', 'keep utilization low',
        'how to build good credit habits', 'credit card management tips', 'what is a grace period', 'what is APR',
        'how is interest calculated', 'should I do a balance transfer', 'how to maximize credit card rewards'
    ],
    'chit_chat': [
        'hello', 'hi', 'hey', 'good morning', 'hi there', 'thank you', 'thanks', 'thanks a lot', 'appreciate it', 'that helps',
        'great', 'how are you', "what's up", 'bye', 'goodbye', 'have a good day', 'got it', 'makes sense', "you're helpful"
    ]
}


def category_for_intent(intent_id: str) -> str:
    """Category owning intent_id (TASK when the intent is unknown)."""
    for category, intents in INTENT_CATEGORIES.items():
        if intent_id in intents:
            return category
    return 'TASK'


def format_intents_for_prompt() -> str:
    """Render the intent catalogue as completion-prompt context."""
    blocks = []
    for intent_id, definition in INTENT_DEFINITIONS.items():
        blocks.append(f"**{definition['name']}** ({intent_id}):\n"
                      f"{definition['description']}\n"
                      f"Capabilities: {', '.join(definition['capabilities'])}\n"
                      f"Examples: {' | '.join(definition['examples'][:3])}")

    intents = '\n\n'.join(blocks)
    return ('Available Intents in the System:\n\n'
            f'{intents}\n\n'
            "When the user's query matches one of these intents, you should respond accordingly. If the query is conversational "
            "or doesn't match a specific intent, respond naturally while being helpful.")
