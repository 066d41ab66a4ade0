"""Tests for data processing functions."""

import pytest
import numpy as np
import polars as pl

from setsig.data import (
    build_incidence,
    filter_sets,
    load_gmt,
    load_statistic_matrix,
    prepare_sets,
    validate_statistic_matrix,
    write_gmt,
)
from setsig.errors import InvalidInputError

@pytest.fixture
def statistic_file(tmp_path):
    """Create a statistic matrix file for testing."""
    path = tmp_path / "statistics.tsv"
    path.write_text(
        "gene_id\tTreatment\tControl\n"
        "gene1\t2.5\t-0.4\n"
        "gene2\t1.1\tNA\n"
        "gene3\t-0.7\t0.9\n"
        "gene4\t0\t1\n"
    )
    return path

@pytest.fixture
def gmt_file(tmp_path):
    """Create a GMT file for testing."""
    path = tmp_path / "sets.gmt"
    path.write_text(
        "SET_A\thttp://example.org/a\tgene1\tgene2\tgene3\n"
        "SET_B\tNA\tgene3\tgene4\t\n"
        "\n"
        "SET_EMPTY\tno genes\n"
    )
    return path

def test_prepare_sets():
    """Test flattening sets into a relation."""
    relation = prepare_sets({
        'A': ['g1', 'g2', 'g2', None, '', float('nan')],
        'B': 'g3',
        'C': [None],
    })

    assert relation.columns == ['sets', 'elements']
    assert relation.rows() == [('A', 'g1'), ('A', 'g2'), ('B', 'g3')]

def test_prepare_sets_invalid():
    """Test errors for invalid set collections."""
    with pytest.raises(InvalidInputError, match="must be a mapping"):
        prepare_sets([['g1', 'g2']])

    with pytest.raises(InvalidInputError, match="non-empty string names"):
        prepare_sets({'': ['g1']})

def test_build_incidence():
    """Test the set-by-element incidence matrix."""
    relation = prepare_sets({'A': ['g1', 'g3'], 'B': ['g2', 'g3', 'unknown']})
    imat, set_names, elements = build_incidence(relation, ['g1', 'g2', 'g3', 'g4'])

    assert set_names == ['A', 'B']
    assert elements == ['g1', 'g2', 'g3', 'g4']
    # g4 is in no set and 'unknown' is ignored
    np.testing.assert_array_equal(
        imat.toarray(),
        [[1, 0, 1, 0],
         [0, 1, 1, 0]]
    )

def test_build_incidence_default_elements():
    """Without explicit elements, columns follow first appearance."""
    relation = prepare_sets({'A': ['g2', 'g1'], 'B': ['g1', 'g3']})
    imat, set_names, elements = build_incidence(relation)

    assert elements == ['g2', 'g1', 'g3']
    np.testing.assert_array_equal(imat.sum(axis=1).A.ravel(), [2, 2])

def test_filter_sets():
    """Test restricting sets to a background and filtering by size."""
    sets = {
        'small': ['g1'],
        'medium': ['g1', 'g2', 'x1'],
        'large': ['g1', 'g2', 'g3', 'g4'],
    }
    background = ['g1', 'g2', 'g3', 'g4']

    assert filter_sets(sets, background=background, min_size=2) == {
        'medium': ['g1', 'g2'],
        'large': ['g1', 'g2', 'g3', 'g4'],
    }
    assert filter_sets(sets, background=background, min_size=2, max_size=3) == {
        'medium': ['g1', 'g2'],
    }
    assert filter_sets(sets) == {
        'small': ['g1'],
        'medium': ['g1', 'g2', 'x1'],
        'large': ['g1', 'g2', 'g3', 'g4'],
    }

def test_filter_sets_invalid_sizes():
    """Test errors for invalid size bounds."""
    with pytest.raises(InvalidInputError, match="at least 1"):
        filter_sets({'A': ['g1']}, min_size=0)

    with pytest.raises(InvalidInputError, match="not be greater"):
        filter_sets({'A': ['g1']}, min_size=5, max_size=3)

def test_validate_statistic_matrix():
    """Test extracting values from a statistic matrix."""
    statistic = pl.DataFrame({
        'gene_id': ['g1', 'g2', 'g3'],
        'c1': [1, 2, 3],
        'c2': [0.5, None, -1.0],
        'c3': [0.1, 0.2, 0.3],
    })
    with pytest.raises(InvalidInputError, match="at least 3 non-missing"):
        validate_statistic_matrix(statistic)

    genes, contrasts, values = validate_statistic_matrix(statistic.drop('c2'))
    assert genes == ['g1', 'g2', 'g3']
    assert contrasts == ['c1', 'c3']
    assert values.dtype == np.float64
    assert values.shape == (3, 2)

def test_validate_statistic_matrix_invalid():
    """Test errors for invalid statistic matrices."""
    with pytest.raises(InvalidInputError, match="polars DataFrame"):
        validate_statistic_matrix({'gene_id': ['g1'], 'c1': [1.0]})

    with pytest.raises(InvalidInputError, match="must be unique"):
        validate_statistic_matrix(pl.DataFrame({
            'gene_id': ['g1', 'g1', 'g2'], 'c1': [1.0, 2.0, 3.0]
        }))

    with pytest.raises(InvalidInputError, match="must not be missing"):
        validate_statistic_matrix(pl.DataFrame({
            'gene_id': ['g1', None, 'g2'], 'c1': [1.0, 2.0, 3.0]
        }))

def test_load_statistic_matrix(statistic_file):
    """Test loading a statistic matrix with missing values."""
    df = load_statistic_matrix(statistic_file)

    assert df.columns == ['gene_id', 'Treatment', 'Control']
    assert df.schema['Treatment'] == pl.Float64
    assert df.schema['Control'] == pl.Float64
    assert df['Control'].null_count() == 1
    assert df['Treatment'].to_list() == [2.5, 1.1, -0.7, 0.0]

def test_load_statistic_matrix_missing_column(statistic_file):
    """Test error for a missing identifier column."""
    with pytest.raises(InvalidInputError, match="Column 'symbol' not found"):
        load_statistic_matrix(statistic_file, gene_col='symbol')

def test_load_gmt(gmt_file):
    """Test loading gene sets from a GMT file."""
    sets = load_gmt(gmt_file)

    assert sets == {
        'SET_A': ['gene1', 'gene2', 'gene3'],
        'SET_B': ['gene3', 'gene4'],
        'SET_EMPTY': [],
    }

def test_load_gmt_duplicate_names(tmp_path, caplog):
    """Duplicate set names are merged with a warning."""
    path = tmp_path / "dup.gmt"
    path.write_text("SET_A\tNA\tgene1\nSET_A\tNA\tgene2\n")

    assert load_gmt(path) == {'SET_A': ['gene1', 'gene2']}
    assert "Duplicate set name 'SET_A'" in caplog.text

def test_load_gmt_malformed(tmp_path):
    """Lines without a description field are rejected."""
    path = tmp_path / "bad.gmt"
    path.write_text("SET_A\tNA\tgene1\nSET_B\n")

    with pytest.raises(InvalidInputError, match="Malformed GMT line 2"):
        load_gmt(path)

def test_write_gmt(tmp_path):
    """Test writing gene sets to a GMT file."""
    path = tmp_path / "out.gmt"
    write_gmt({'SET_B': ['g3', 'g4', 'g3'], 'SET_A': ['g1']}, path,
              descriptions={'SET_A': 'first'})

    assert path.read_text() == "SET_B\tNA\tg3\tg4\nSET_A\tfirst\tg1\n"
    assert load_gmt(path) == {'SET_B': ['g3', 'g4'], 'SET_A': ['g1']}
