"""Tests for the in-memory provider and the adapter registry."""

import pytest

from kubeconverge.providers.base import ProviderRegistry
from kubeconverge.providers.memory import InMemoryProvider
from kubeconverge.utils.errors import (
    ConfigurationError,
    PermanentProviderError,
    ResourceNotFoundError,
    TransientProviderError,
)


@pytest.fixture
def provider():
    return InMemoryProvider('vpc', replace_fields=['cidr_block'])


class TestInMemoryProvider:
    """Test CRUD behaviour and fault injection."""

    def test_create_returns_id_and_outputs(self, provider):
        """Test outputs echo attributes plus id and arn."""
        provider_id, outputs = provider.create('main', {'cidr_block': '10.0.0.0/16'})

        assert provider_id == 'vpc-0001'
        assert outputs == {
            'cidr_block': '10.0.0.0/16',
            'id': 'vpc-0001',
            'arn': 'arn:mock:vpc:::main',
        }
        assert provider.read(provider_id) == {'cidr_block': '10.0.0.0/16'}

    def test_create_adopts_existing_name(self, provider):
        """Test a retried create does not duplicate the object."""
        first, _ = provider.create('main', {'cidr_block': '10.0.0.0/16'})
        second, _ = provider.create('main', {'cidr_block': '10.0.0.0/16'})

        assert first == second
        assert provider.names() == ['main']

    def test_update(self, provider):
        """Test in-place update replaces attributes."""
        provider_id, _ = provider.create('main', {'cidr_block': '10.0.0.0/16', 'dns': False})

        outputs = provider.update(provider_id, {'cidr_block': '10.0.0.0/16', 'dns': True})

        assert outputs['dns'] is True
        assert provider.attributes_of('main')['dns'] is True

    def test_read_and_update_missing(self, provider):
        """Test unknown ids raise ResourceNotFoundError."""
        with pytest.raises(ResourceNotFoundError):
            provider.read('vpc-9999')
        with pytest.raises(ResourceNotFoundError):
            provider.update('vpc-9999', {})

    def test_delete_is_idempotent(self, provider):
        """Test deleting twice is fine."""
        provider_id, _ = provider.create('main', {})

        provider.delete(provider_id)
        provider.delete(provider_id)

        assert provider.names() == []
        assert provider.operations('delete') == [('delete', 'main'), ('delete', provider_id)]

    def test_fail_next_default_is_permanent(self, provider):
        """Test injected failures default to permanent errors."""
        provider.fail_next('create')

        with pytest.raises(PermanentProviderError):
            provider.create('main', {})
        provider_id, _ = provider.create('main', {})

        assert provider_id == 'vpc-0001'
        assert [c.succeeded for c in provider.calls] == [False, True]

    def test_fail_next_by_name_and_times(self, provider):
        """Test faults can target one name a fixed number of times."""
        provider.fail_next('create', name='b', error=lambda: TransientProviderError('throttled'), times=2)

        provider.create('a', {})
        for _ in range(2):
            with pytest.raises(TransientProviderError):
                provider.create('b', {})
        provider.create('b', {})

        assert provider.operations('create') == [('create', 'a'), ('create', 'b')]

    def test_fail_always(self, provider):
        """Test times=None fails every call until cleared."""
        provider.fail_next('create', times=None)

        for _ in range(3):
            with pytest.raises(PermanentProviderError):
                provider.create('main', {})

        provider.clear_faults()
        provider.create('main', {})

    def test_drift_and_out_of_band_removal(self, provider):
        """Test hooks that change objects behind the reconciler's back."""
        provider_id, _ = provider.create('main', {'cidr_block': '10.0.0.0/16'})

        provider.drift('main', cidr_block='10.9.0.0/16')
        assert provider.read(provider_id)['cidr_block'] == '10.9.0.0/16'

        provider.remove_out_of_band('main')
        assert provider.attributes_of('main') is None

    def test_requires_replacement(self, provider):
        """Test replace fields are reported."""
        assert provider.requires_replacement('cidr_block')
        assert not provider.requires_replacement('tags')


class TestProviderRegistry:
    """Test kind lookup."""

    def test_lookup(self, provider):
        """Test adapters are found by kind."""
        registry = ProviderRegistry([provider, InMemoryProvider('subnet')])

        assert registry.get('vpc') is provider
        assert 'subnet' in registry
        assert registry.kinds() == ['subnet', 'vpc']

    def test_unknown_kind(self, provider):
        """Test an unregistered kind is a configuration error listing known kinds."""
        registry = ProviderRegistry([provider])

        with pytest.raises(ConfigurationError) as exc_info:
            registry.get('eks_cluster')

        assert 'eks_cluster' in exc_info.value.message
        assert 'vpc' in exc_info.value.suggestions[0]

    def test_register_under_alias(self, provider):
        """Test one adapter can serve another kind name."""
        registry = ProviderRegistry()
        registry.register(provider, kind='network')

        assert registry.get('network') is provider
