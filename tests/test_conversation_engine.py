"""End-to-end tests for the classification cascade."""

from unittest.mock import Mock

import pytest

from conftest import QUERY_AXIS
from finchat_nlu.models.core import IntentMatch
from finchat_nlu.services.conversation_engine import (APOLOGY_RESPONSE, MISSING_TAG_RESPONSE, SLOT_EXECUTION_ERROR,
                                                      apply_intent_heuristics)
from finchat_nlu.services.llm_fallback import GENERIC_FALLBACK
from finchat_nlu.services.slot_filling import BUDGET_AMOUNT, MEMORY_TAG

USER = {'user_id': 'u1', 'cards': []}


def last_user_message(call):
    return call['messages'][-1]['content']


class TestIntentHeuristics:

    def test_save_wording_means_remember(self):
        match = apply_intent_heuristics('save this dinner receipt', IntentMatch('chit_chat', 0.65, ''))
        assert match.intent_id == 'remember_memory'
        assert match.similarity == pytest.approx(0.73)

    def test_save_with_retrieval_wording_is_left_alone(self):
        match = apply_intent_heuristics('show what I told you to remember', IntentMatch('recall_memory', 0.8, ''))
        assert match.intent_id == 'recall_memory'

    @pytest.mark.parametrize('query', ['which card has the lowest apr', 'my visa card rewards', 'show my balance on chase'])
    def test_data_lookups_are_not_recommendations(self, query):
        match = apply_intent_heuristics(query, IntentMatch('card_recommendation', 0.8, ''))
        assert match.intent_id == 'query_card_data'
        assert match.similarity == pytest.approx(0.87)

    def test_plain_recommendation_unchanged(self):
        original = IntentMatch('card_recommendation', 0.9, '')
        assert apply_intent_heuristics('best card for gas', original) is original


class TestConfidenceBands:

    def test_critical_intent_is_returned_verbatim(self, engine, seed_intent, embed, llm, store):
        seed_intent('query_card_data', 0.91)
        embed.pin('show my card balances', QUERY_AXIS)
        handler = Mock(return_value='| Card | Balance |')
        engine.register_handler('query_card_data', handler)

        response = engine.process_query('show my card balances', USER, session_id='s1')

        assert response == '| Card | Balance |'
        assert llm.completion_calls == []
        assert handler.call_args[0][2] == 'show my card balances'
        log = store.docs('query_log')[0]
        assert log['matched_intent'] == 'query_card_data'
        assert log['decomposition_method'] == 'vector'

    def test_non_critical_local_response_is_reworded(self, engine, seed_intent, embed, llm):
        llm.category = 'GUIDANCE'
        seed_intent('debt_guidance', 0.8)
        embed.pin('how do I get out of debt', QUERY_AXIS)
        engine.register_handler('debt_guidance', Mock(return_value='Pay the highest APR first'))

        response = engine.process_query('how do I get out of debt', USER, session_id='s1')

        assert response == 'LLM answer'
        prompt = last_user_message(llm.completion_calls[0])
        assert 'Please use this EXACT response' in prompt
        assert 'Pay the highest APR first' in prompt

    def test_category_filter_applies_before_top_k(self, engine, seed_intent, embed, llm):
        llm.category = 'GUIDANCE'
        for intent_id in ('query_card_data', 'card_recommendation', 'remember_memory'):
            seed_intent(intent_id, 0.99)
        seed_intent('debt_guidance', 0.8)
        embed.pin('how do I get out of debt', QUERY_AXIS)
        handler = Mock(return_value='Pay the highest APR first')
        engine.register_handler('debt_guidance', handler)

        engine.process_query('how do I get out of debt', USER, session_id='s1')

        handler.assert_called_once()
        assert engine.registry.get('s1').context.get_last_intent() == 'debt_guidance'

    def test_low_band_passes_only_a_hint(self, engine, seed_intent, embed, llm):
        seed_intent('query_card_data', 0.65)
        embed.pin('balances?', QUERY_AXIS)
        handler = Mock(return_value='| Card | Balance |')
        engine.register_handler('query_card_data', handler)

        response = engine.process_query('balances?', USER, session_id='s1')

        assert response == 'LLM answer'
        handler.assert_not_called()
        assert '(65% confidence)' in last_user_message(llm.completion_calls[0])
        assert engine.registry.get('s1').context.get_last_intent() == 'gpt_fallback'

    def test_no_match_uses_completion(self, engine, llm, store):
        response = engine.process_query('tell me a joke', USER, session_id='s1')

        assert response == 'LLM answer'
        assert len(llm.completion_calls) == 1
        assert store.docs('query_log')[0]['decomposition_method'] == 'gpt'

    def test_missing_handler_falls_back_to_completion(self, engine, seed_intent, embed, llm):
        seed_intent('query_card_data', 0.95)
        embed.pin('show my card balances', QUERY_AXIS)

        assert engine.process_query('show my card balances', USER, session_id='s1') == 'LLM answer'
        assert 'System note' in last_user_message(llm.completion_calls[0])

    def test_failing_handler_falls_back_to_completion(self, engine, seed_intent, embed):
        seed_intent('query_card_data', 0.95)
        embed.pin('show my card balances', QUERY_AXIS)
        engine.register_handler('query_card_data', Mock(side_effect=RuntimeError('wallet service down')))

        assert engine.process_query('show my card balances', USER, session_id='s1') == 'LLM answer'

    def test_payment_keywords_skip_classification(self, engine, llm):
        engine.process_query('when is my payment due', USER, session_id='s1')
        assert llm.classification_calls == []

    def test_embedding_failure_keeps_category(self, engine, embed, llm):
        llm.category = 'GUIDANCE'
        embed.fail = True

        assert engine.process_query('how can I improve my credit score', USER, session_id='s1') == 'LLM answer'
        assert 'GUIDANCE MODE' in llm.completion_calls[0]['messages'][0]['content']

    def test_model_outage_returns_help_text(self, engine, llm):
        llm.fail = True
        assert engine.process_query('tell me a joke', USER, session_id='s1') == GENERIC_FALLBACK

    def test_unexpected_error_returns_apology(self, engine, store):
        engine.classifier = Mock()
        engine.classifier.gate.side_effect = RuntimeError('boom')

        assert engine.process_query('best card for gas', USER, session_id='s1') == APOLOGY_RESPONSE
        log = store.docs('query_log')[0]
        assert log['success'] is False
        assert log['decomposition_method'] == 'error'
        assert log['error_message'] == 'boom'


class TestDirectRoute:

    def test_compare_strategies_follow_up(self, engine, seed_intent, embed, llm, store):
        seed_intent('card_recommendation', 0.95)
        embed.pin('Which card should I use at Costco for $500?', QUERY_AXIS)
        engine.register_handler('card_recommendation',
                                Mock(return_value='Use your Amex Gold for 4x points. Want me to compare all strategies?'))
        compare = Mock(return_value='| Strategy | Card |')
        engine.register_handler('card_recommendation:compare_strategies', compare)

        first = engine.process_query('Which card should I use at Costco for $500?', USER, session_id='s1')
        assert first.startswith('Use your Amex Gold')
        context = engine.registry.get('s1').context
        assert context.has_pending_action('compare_strategies')
        calls_after_first_turn = len(llm.calls)

        second = engine.process_query('compare all strategies', USER, session_id='s1')

        assert second == '| Strategy | Card |'
        entities, _, rewritten = compare.call_args[0]
        assert entities['amount'] == 500.0
        assert entities['merchant'] == 'costco'
        assert rewritten.startswith('compare all card strategies for costco')
        assert len(llm.calls) == calls_after_first_turn
        assert not context.has_pending_action('compare_strategies')
        assert context.get_last_intent() == 'card_recommendation'
        assert store.docs('query_log')[-1]['decomposition_method'] == 'direct_route'

    def test_route_without_handler_uses_completion(self, engine, llm):
        context = engine.registry.get('s1').context
        context.add_turn('which card for costco', 'card_recommendation', {'merchant': 'costco'}, 'Want me to compare all strategies?')

        assert engine.process_query('compare all strategies', USER, session_id='s1') == 'LLM answer'
        assert llm.classification_calls == []
        assert len(context.history) == 2
        assert not context.has_pending_action('compare_strategies')

    def test_failing_route_handler(self, engine, llm, store):
        context = engine.registry.get('s1').context
        context.add_turn('which card for costco', 'card_recommendation', {'merchant': 'costco'}, 'Want me to compare all strategies?')
        engine.register_handler('card_recommendation:compare_strategies', Mock(side_effect=RuntimeError('no strategies')))

        assert engine.process_query('compare all strategies', USER, session_id='s1') == 'LLM answer'
        assert len(context.history) == 1
        log = store.docs('query_log')[0]
        assert log['success'] is False
        assert log['decomposition_method'] == 'direct_route'


class TestSlotFilling:

    def test_handler_question_then_answer(self, engine, seed_intent, embed, llm):
        seed_intent('split_payment', 0.95)
        embed.pin('help me split my payment', QUERY_AXIS)

        def split_payment(entities, user_data, raw_query):
            if not entities.get('amount'):
                return {
                    'response': 'How much can you pay this month?',
                    'slot_question': {
                        'type': BUDGET_AMOUNT,
                        'target_intent': 'split_payment',
                        'required_slots': ['budget']
                    }
                }
            return f"Plan for ${entities['amount']:.0f}"

        engine.register_handler('split_payment', split_payment)

        assert engine.process_query('help me split my payment', USER, session_id='s1') == 'How much can you pay this month?'
        assert engine.registry.get('s1').slot_filling.has_pending_question()
        calls_before_answer = len(llm.calls)

        assert engine.process_query('1500', USER, session_id='s1') == 'Plan for $1500'
        assert len(llm.calls) == calls_before_answer
        assert not engine.registry.get('s1').slot_filling.has_pending_question()
        assert engine.registry.get('s1').context.get_last_intent() == 'split_payment'

    def test_preset_budget_question(self, engine, store):
        handler = Mock(return_value='Pay $900 to Amex and $600 to Visa')
        engine.register_handler('split_payment', handler)
        engine.registry.get('s1').slot_filling.ask_question(BUDGET_AMOUNT, 'split_payment', ['budget'])

        assert engine.process_query('$1,500', USER, session_id='s1') == 'Pay $900 to Amex and $600 to Visa'
        assert handler.call_args[0][0] == {'amount': 1500.0}
        assert store.docs('query_log')[0]['decomposition_method'] == 'slot_filled'

    def test_partial_slots_acknowledged(self, engine):
        engine.registry.get('s1').slot_filling.ask_question(BUDGET_AMOUNT, 'split_payment', ['budget', 'strategy'])

        response = engine.process_query('1500', USER, session_id='s1')
        assert response.startswith("Got it! I've recorded budget.")

    def test_non_answer_clears_question(self, engine):
        slots = engine.registry.get('s1').slot_filling
        slots.ask_question(BUDGET_AMOUNT, 'split_payment', ['budget'])

        assert engine.process_query('hello there', USER, session_id='s1') == 'LLM answer'
        assert not slots.has_pending_question()

    def test_missing_split_handler(self, engine):
        engine.registry.get('s1').slot_filling.ask_question(BUDGET_AMOUNT, 'split_payment', ['budget'])
        assert engine.process_query('1500', USER, session_id='s1') == SLOT_EXECUTION_ERROR

    def test_memory_tag_completes_draft(self, engine):
        handler = Mock(return_value='Saved under travel')
        engine.register_handler('remember_memory', handler)
        draft = {'natural_text': 'Dinner at Nobu $180'}
        engine.registry.get('s1').slot_filling.ask_question(MEMORY_TAG, 'remember_memory', ['tags'], {'memory_draft': draft})

        assert engine.process_query('tag it as travel', USER, session_id='s1') == 'Saved under travel'
        entities, _, raw_text = handler.call_args[0]
        assert entities == {'tags': ['travel'], 'memory_draft': draft}
        assert raw_text == 'Dinner at Nobu $180'

    def test_memory_tag_without_draft(self, engine):
        engine.register_handler('remember_memory', Mock())
        engine.registry.get('s1').slot_filling.ask_question(MEMORY_TAG, 'remember_memory', ['tags'])

        assert engine.process_query('travel', USER, session_id='s1') == MISSING_TAG_RESPONSE


class TestLearningSignals:

    def test_structured_query_is_learned(self, engine, seed_intent, embed, worker, store):
        seed_intent('card_recommendation', 0.95)
        embed.pin('best card for gas', QUERY_AXIS)
        engine.register_handler('card_recommendation', Mock(return_value={
            'response': 'Use your Shell card',
            'structured_query': {'intent': 'card_recommendation', 'category': 'gas'}
        }))

        assert engine.process_query('best card for gas', USER, session_id='s1') == 'Use your Shell card'
        worker.drain()

        patterns = store.docs('pattern')
        assert len(patterns) == 1
        assert patterns[0]['intent'] == 'card_recommendation'
        assert patterns[0]['decomposed_query'] == {'intent': 'card_recommendation', 'category': 'gas'}

    def test_pattern_usage_is_recorded(self, engine, seed_intent, embed, worker, store, make_pattern):
        make_pattern('p1', 'best card for gas', usage_count=2)
        seed_intent('card_recommendation', 0.95)
        embed.pin('best card for gas', QUERY_AXIS)
        engine.register_handler('card_recommendation', Mock(return_value={'response': 'Use your Shell card', 'pattern_id': 'p1'}))

        engine.process_query('best card for gas', USER, session_id='s1')
        assert engine.registry.get('s1').context.last_pattern_id == 'p1'
        worker.drain()

        assert store.get_document('p1', 'pattern')['document']['usage_count'] == 3

    def test_reformulation_records_implicit_feedback(self, engine, worker, store):
        engine.process_query('which card gives best rewards for groceries', USER, session_id='s1')
        first_log_id = engine.registry.get('s1').context.last_query_log_id

        engine.process_query('which card gives most rewards for groceries', USER, session_id='s1')
        worker.drain()

        feedback = store.docs('feedback')
        assert len(feedback) == 1
        assert feedback[0]['query_log_id'] == first_log_id
        assert feedback[0]['feedback_subtype'] == 'reformulation'

    def test_follow_up_is_not_a_reformulation(self, engine, worker, store):
        engine.process_query('which card gives best rewards for groceries', USER, session_id='s1')
        engine.process_query('what about gas', USER, session_id='s1')
        worker.drain()

        assert store.docs('feedback') == []


def test_sessions_are_isolated(engine):
    engine.registry.get('s1').context.add_turn('best card for gas', 'card_recommendation', {'category': 'gas'})

    assert len(engine.registry.get('s2').context.history) == 0
    engine.reset_session('s1')
    assert len(engine.registry.get('s1').context.history) == 0
