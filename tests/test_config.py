"""Tests for configuration management."""

import pytest
import tomli
from tomli_w import dump as tomli_w_dump
from pathlib import Path

from degsea.config import AnalysisSettings, PipelineConfig
from degsea.exceptions import ConfigurationError


def _write_config(path, config):
    with open(path, 'wb') as f:
        tomli_w_dump(config, f)
    return path


@pytest.fixture
def minimal_config():
    return {
        'input': {
            'counts_file': 'counts.tsv',
            'sample_sheet': 'samples.tsv'
        },
        'output': {
            'directory': 'results'
        },
        'analysis': {
            'group_a': 'control',
            'group_b': 'treated'
        }
    }


@pytest.fixture
def minimal_config_file(tmp_path, minimal_config):
    """Create a minimal valid configuration file."""
    return _write_config(tmp_path / 'config.toml', minimal_config)


@pytest.fixture
def full_config_file(tmp_path, minimal_config):
    """Create a configuration file with all optional parameters."""
    config = dict(minimal_config)
    config['input'] = dict(
        minimal_config['input'],
        gene_sets_file='sets.gmt',
        id_mapping_file='mapping.tsv',
        sample_column='sample',
        group_column='group'
    )
    config['output'] = {'directory': 'out', 'save_intermediate': True}
    config['analysis'] = dict(
        minimal_config['analysis'],
        min_replicates_per_group=3,
        low_count_filter_threshold=5,
        num_threads=4,
        fdr_method='fdr_by',
        fdr_alpha=0.1
    )
    config['dispersion'] = {'fit_type': 'local', 'outlier_sd': 3.0}
    config['enrichment'] = {
        'run': True,
        'min_size': 10,
        'max_size': 200,
        'permutation_count': 5000,
        'weight': 0.0,
        'random_seed': 17
    }
    return _write_config(tmp_path / 'config.toml', config)


def test_load_minimal_config(minimal_config_file):
    """Test loading a minimal valid configuration."""
    config = PipelineConfig(minimal_config_file)
    assert config.group_a == 'control'
    assert config.group_b == 'treated'
    assert config.sample_column == 'sample_id'
    assert config.group_column == 'condition'
    assert config.num_threads == 1
    assert config.run_enrichment is False
    assert config.random_seed is None
    assert config.analysis_settings() == AnalysisSettings()


def test_load_full_config(full_config_file):
    """Test loading a configuration with all optional parameters."""
    config = PipelineConfig(full_config_file)
    assert config.run_enrichment is True
    assert config.random_seed == 17
    assert config.sample_column == 'sample'
    assert config.group_column == 'group'

    settings = config.analysis_settings()
    assert settings.min_replicates_per_group == 3
    assert settings.low_count_filter_threshold == 5
    assert settings.num_threads == 4
    assert settings.fdr_method == 'fdr_by'
    assert settings.fdr_alpha == pytest.approx(0.1)
    assert settings.dispersion_fit_type == 'local'
    assert settings.outlier_sd == pytest.approx(3.0)
    assert settings.enrichment_min_size == 10
    assert settings.enrichment_max_size == 200
    assert settings.permutation_count == 5000
    assert settings.enrichment_weight == 0.0


def test_missing_config_file(tmp_path):
    with pytest.raises(ConfigurationError, match="does not exist"):
        PipelineConfig(tmp_path / 'absent.toml')


def test_invalid_toml(tmp_path):
    path = tmp_path / 'broken.toml'
    path.write_text("[input\ncounts_file = ")
    with pytest.raises(ConfigurationError, match="Error loading configuration file"):
        PipelineConfig(path)


def test_missing_sections(tmp_path):
    path = _write_config(tmp_path / 'config.toml', {'input': {'counts_file': 'c.tsv'}})
    with pytest.raises(ConfigurationError, match="Missing required sections") as exc_info:
        PipelineConfig(path)
    assert exc_info.value.details['missing'] == ['output', 'analysis']


def test_missing_input_files(tmp_path, minimal_config):
    del minimal_config['input']['sample_sheet']
    path = _write_config(tmp_path / 'config.toml', minimal_config)
    with pytest.raises(ValueError, match="Missing required input files in configuration: sample_sheet"):
        PipelineConfig(path)


def test_missing_groups(tmp_path, minimal_config):
    del minimal_config['analysis']['group_b']
    path = _write_config(tmp_path / 'config.toml', minimal_config)
    with pytest.raises(ConfigurationError, match="group_b"):
        PipelineConfig(path)


def test_seed_required_for_enrichment(tmp_path, minimal_config):
    minimal_config['input']['gene_sets_file'] = 'sets.gmt'
    path = _write_config(tmp_path / 'config.toml', minimal_config)
    with pytest.raises(ConfigurationError, match="random_seed"):
        PipelineConfig(path)

    minimal_config['enrichment'] = {'run': False}
    path = _write_config(tmp_path / 'config.toml', minimal_config)
    config = PipelineConfig(path)
    assert config.run_enrichment is False


@pytest.mark.parametrize('seed', [-1, 1.5, '7', True])
def test_invalid_random_seed(tmp_path, minimal_config, seed):
    minimal_config['input']['gene_sets_file'] = 'sets.gmt'
    minimal_config['enrichment'] = {'random_seed': seed}
    path = _write_config(tmp_path / 'config.toml', minimal_config)
    with pytest.raises(ConfigurationError, match="enrichment.random_seed must be a non-negative integer"):
        PipelineConfig(path)


def test_pool_within_groups_setting(tmp_path, minimal_config):
    minimal_config['dispersion'] = {'pool_within_groups': False}
    path = _write_config(tmp_path / 'config.toml', minimal_config)
    assert PipelineConfig(path).analysis_settings().pool_dispersion_within_groups is False


def test_get_output_path(minimal_config_file):
    config = PipelineConfig(minimal_config_file)
    assert config.get_output_path() == Path('results')
    assert config.get_output_path('data') == Path('results') / 'data'


def test_save_config(tmp_path, full_config_file):
    config = PipelineConfig(full_config_file)
    saved = tmp_path / 'saved.toml'
    config.save_config(saved)

    with open(saved, 'rb') as f:
        reloaded = tomli.load(f)
    assert reloaded == config.config
