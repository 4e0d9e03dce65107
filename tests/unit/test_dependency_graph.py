"""
Unit tests for object type ordering.

Includes property-based testing with hypothesis for order independence.
"""

import pytest
from hypothesis import given
from hypothesis import strategies as st

from demo_seed.dependency_graph import INJECTION_ORDER, DependencyGraph, order_for, reverse_order_for
from demo_seed.exceptions import InvariantViolation

KNOWN_AND_CUSTOM = INJECTION_ORDER + ["Invoice__c", "Shipment__c"]


class TestOrderFor:
    """Tests for order_for"""

    def test_parents_before_children(self):
        """Account comes before Contact and Opportunity regardless of input order"""
        assert order_for(["Opportunity", "Contact", "Account"]) == ["Account", "Contact", "Opportunity"]

    def test_activities_after_their_targets(self):
        """Task and EmailMessage come after Contact and Opportunity"""
        order = order_for(["EmailMessage", "Task", "Opportunity", "Contact"])
        assert order.index("Contact") < order.index("Task")
        assert order.index("Opportunity") < order.index("EmailMessage")

    def test_unknown_types_appended_in_first_seen_order(self):
        """Custom objects go after every known type, keeping their first-seen order"""
        order = order_for(["Shipment__c", "Account", "Invoice__c", "Shipment__c"])
        assert order == ["Account", "Shipment__c", "Invoice__c"]

    def test_duplicates_removed(self):
        assert order_for(["Account", "Account", "Contact"]) == ["Account", "Contact"]

    def test_empty_input(self):
        assert order_for([]) == []

    @given(st.permutations(KNOWN_AND_CUSTOM[:10]))
    def test_property_known_order_is_input_order_independent(self, types):
        """Property test: permuting known types never changes the result"""
        assert order_for(types) == order_for(sorted(types))

    @given(st.lists(st.sampled_from(KNOWN_AND_CUSTOM), min_size=1))
    def test_property_output_is_set_of_inputs(self, types):
        """Property test: every input type appears exactly once"""
        order = order_for(types)
        assert sorted(order) == sorted(set(types))


class TestReverseOrderFor:
    """Tests for reverse_order_for"""

    def test_children_before_parents(self):
        assert reverse_order_for(["Account", "Contact", "Opportunity"]) == ["Opportunity", "Contact", "Account"]

    @given(st.lists(st.sampled_from(KNOWN_AND_CUSTOM)))
    def test_property_exact_reversal(self, types):
        """Property test: cleanup order is exactly the reversed injection order"""
        assert reverse_order_for(types) == list(reversed(order_for(types)))


class TestDependencyGraph:
    """Tests for custom graphs"""

    def test_custom_known_order(self):
        graph = DependencyGraph(["Parent__c", "Child__c"])
        assert graph.order_for(["Child__c", "Parent__c", "Account"]) == ["Parent__c", "Child__c", "Account"]

    def test_duplicate_known_type_rejected(self):
        with pytest.raises(InvariantViolation):
            DependencyGraph(["Account", "Contact", "Account"])
