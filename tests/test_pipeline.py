"""
Test cases for the gene set testing pipeline.
"""

import pytest
import logging
import warnings
import polars as pl
from pathlib import Path
import tomli
from tomli_w import dump as tomli_w_dump

from setsig.cli import main, parse_args, update_config
from setsig.data import load_gmt
from setsig.errors import DroppedSetsWarning, InvalidInputError
from setsig.pipeline import SetEnrichmentPipeline
from setsig.utils import setup_logging

@pytest.fixture(autouse=True)
def restore_root_logger():
    """Remove handlers added by the command line entry point."""
    root_logger = logging.getLogger()
    handlers = list(root_logger.handlers)
    level = root_logger.level
    yield
    for handler in root_logger.handlers[:]:
        if handler not in handlers:
            root_logger.removeHandler(handler)
            handler.close()
    root_logger.setLevel(level)

@pytest.fixture
def input_files(tmp_path):
    """Create a statistic matrix and GMT file."""
    statistic_file = tmp_path / "statistics.tsv"
    rows = ["gene_id\tTreatment\tKnockdown"]
    treatment = [3.1, 2.4, 2.2, 1.9, -0.3, -0.8, -1.2, -1.7, 0.4, 0.1, -0.2, 0.6]
    knockdown = [-0.5, 0.3, -1.1, 0.8, 2.6, 1.9, 2.2, 1.4, -0.9, "NA", -0.1, 0.2]
    for i, (t, k) in enumerate(zip(treatment, knockdown), start=1):
        rows.append(f"gene{i}\t{t}\t{k}")
    statistic_file.write_text("\n".join(rows) + "\n")

    gene_sets_file = tmp_path / "sets.gmt"
    gene_sets_file.write_text(
        "SET_UP\tNA\tgene1\tgene2\tgene3\tgene4\n"
        "SET_UP_COPY\tNA\tgene1\tgene2\tgene3\tgene4\n"
        "SET_DOWN\tNA\tgene5\tgene6\tgene7\tgene8\n"
        "SET_TINY\tNA\tgene9\tgeneX\n"
    )
    return statistic_file, gene_sets_file

def _write_config(path, statistic_file, gene_sets_file, output_dir, analysis=None, clustering=None):
    config = {
        'input': {
            'statistic_file': str(statistic_file),
            'gene_sets_file': str(gene_sets_file)
        },
        'output': {
            'output_dir': str(output_dir)
        },
        'analysis': analysis or {},
        'clustering': clustering or {}
    }
    with open(path, 'wb') as f:
        tomli_w_dump(config, f)
    return path

@pytest.fixture
def config_file(tmp_path, input_files):
    """Create a configuration file pointing at the input files."""
    statistic_file, gene_sets_file = input_files
    return _write_config(tmp_path / "config.toml", statistic_file, gene_sets_file,
                         tmp_path / "results")

def test_pipeline_initialization(config_file):
    """Test pipeline initialization and data loading."""
    pipeline = SetEnrichmentPipeline(config_file)

    assert pipeline.contrast_names == ['Treatment', 'Knockdown']
    assert pipeline.statistic_df.height == 12
    assert set(pipeline.gene_sets) == {'SET_UP', 'SET_UP_COPY', 'SET_DOWN', 'SET_TINY'}
    assert pipeline.results is None

def test_pipeline_missing_input_file(tmp_path, input_files):
    """Test error handling for missing input files."""
    statistic_file, _ = input_files
    config_path = _write_config(tmp_path / "config.toml", statistic_file,
                                tmp_path / "missing.gmt", tmp_path / "results")

    with pytest.raises(FileNotFoundError, match="gene_sets_file"):
        SetEnrichmentPipeline(config_path)

def test_pipeline_run(config_file, tmp_path):
    """Test a complete run without clustering."""
    pipeline = SetEnrichmentPipeline(config_file)
    results = pipeline.run()

    # SET_TINY has a single measured gene and is filtered out
    assert set(pipeline.tested_sets) == {'SET_UP', 'SET_UP_COPY', 'SET_DOWN'}
    assert results.height == 6
    assert pipeline.clusters is None

    treatment = results.filter(pl.col('Contrast') == 'Treatment')
    assert treatment.filter(pl.col('GeneSet') == 'SET_UP')['Direction'].item() == 'Up'
    assert treatment.filter(pl.col('GeneSet') == 'SET_DOWN')['Direction'].item() == 'Down'

    output_dir = tmp_path / "results"
    saved = pl.read_csv(output_dir / "camera_pr_results.tsv", separator='\t')
    assert saved.columns == ['Contrast', 'GeneSet', 'NGenes', 'Direction', 'Statistic',
                             'df', 'PValue', 'FDR']
    assert saved.height == 6
    assert (output_dir / "pipeline_config.toml").exists()
    assert not (output_dir / "set_clusters.tsv").exists()

def test_pipeline_run_with_clustering(tmp_path, input_files):
    """Redundant sets are collapsed to one representative before testing."""
    statistic_file, gene_sets_file = input_files
    config_path = _write_config(
        tmp_path / "config.toml", statistic_file, gene_sets_file, tmp_path / "results",
        analysis={'use_ranks': True, 'adjust_globally': True},
        clustering={'enabled': True, 'type': 'jaccard', 'cutoff': 0.85}
    )
    pipeline = SetEnrichmentPipeline(config_path)
    results = pipeline.run()

    assert pipeline.clusters['cluster'].to_list() == [1, 1, 2]
    assert list(pipeline.tested_sets) == ['SET_UP', 'SET_DOWN']
    assert results.height == 4
    assert 'df' not in results.columns
    assert 'FDR' in results.columns

    output_dir = tmp_path / "results"
    clusters = pl.read_csv(output_dir / "set_clusters.tsv", separator='\t')
    assert clusters.columns == ['set', 'cluster', 'set_size']
    assert load_gmt(output_dir / "representative_sets.gmt") == {
        'SET_UP': ['gene1', 'gene2', 'gene3', 'gene4'],
        'SET_DOWN': ['gene5', 'gene6', 'gene7', 'gene8'],
    }

def test_pipeline_logs_dropped_sets(tmp_path, input_files):
    """Sets dropped by the test are reported in the pipeline log."""
    statistic_file, _ = input_files
    gene_sets_file = tmp_path / "missing_values.gmt"
    gene_sets_file.write_text(
        "SET_UP\tNA\tgene1\tgene2\tgene3\tgene4\n"
        "SET_PARTIAL\tNA\tgene9\tgene10\n"
    )
    config_path = _write_config(tmp_path / "config.toml", statistic_file, gene_sets_file,
                                tmp_path / "results")
    setup_logging(tmp_path / "logs")
    pipeline = SetEnrichmentPipeline(config_path)

    # gene10 has no Knockdown statistic, leaving SET_PARTIAL with one gene there
    with warnings.catch_warnings():
        warnings.simplefilter("error", DroppedSetsWarning)
        results = pipeline.run()

    assert results['GeneSet'].unique().to_list() == ['SET_UP']
    for handler in logging.getLogger().handlers:
        handler.flush()
    log_text = (tmp_path / "logs" / "pipeline.log").read_text()
    assert "WARNING" in log_text
    assert "SET_PARTIAL" in log_text

def test_pipeline_no_sets_in_size_range(tmp_path, input_files):
    """A run fails when no set is within the configured size range."""
    statistic_file, gene_sets_file = input_files
    config_path = _write_config(
        tmp_path / "config.toml", statistic_file, gene_sets_file, tmp_path / "results",
        analysis={'min_set_size': 2, 'max_set_size': 3}
    )
    pipeline = SetEnrichmentPipeline(config_path)

    with pytest.raises(InvalidInputError, match="No genes in `sets`"):
        pipeline.run()

def test_save_results_before_run(config_file):
    """Saving before running is an error."""
    pipeline = SetEnrichmentPipeline(config_file)
    with pytest.raises(ValueError, match="Run the pipeline first"):
        pipeline.save_results()

def test_update_config():
    """Command line options override the configuration file."""
    args = parse_args([
        'config.toml',
        '--statistics', 'other.tsv',
        '--output-dir', 'out',
        '--use-ranks',
        '--inter-gene-cor', '0.05',
        '--no-sort',
        '--cluster',
        '--similarity', 'otsuka',
        '--cutoff', '0.7',
    ])
    config = update_config({'input': {'statistic_file': 'stats.tsv'}}, args)

    assert config['input']['statistic_file'] == 'other.tsv'
    assert config['output']['output_dir'] == 'out'
    assert config['analysis'] == {'use_ranks': True, 'inter_gene_cor': 0.05, 'sort': False}
    assert config['clustering'] == {'enabled': True, 'type': 'otsuka', 'cutoff': 0.7}

def test_cli_main(config_file, tmp_path):
    """Test running the pipeline from the command line."""
    output_dir = tmp_path / "cli_results"
    main([str(config_file), '--output-dir', str(output_dir), '--cluster'])

    assert (output_dir / "camera_pr_results.tsv").exists()
    assert (output_dir / "set_clusters.tsv").exists()
    assert (output_dir / "logs" / "pipeline.log").exists()

    with open(output_dir / "pipeline_config.toml", 'rb') as f:
        saved = tomli.load(f)
    assert saved['clustering']['enabled'] is True
    assert Path(saved['output']['output_dir']) == output_dir

def test_cli_invalid_config(tmp_path):
    """An unreadable configuration file exits with status 1."""
    with pytest.raises(SystemExit) as excinfo:
        main([str(tmp_path / "missing.toml")])
    assert excinfo.value.code == 1
