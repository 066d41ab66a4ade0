"""Main pipeline implementation for gene set testing."""

import logging
import time
import warnings
from pathlib import Path
from typing import Dict, List, Optional, Union

import polars as pl

from setsig.config import PipelineConfig
from setsig.cluster import cluster_sets, select_representatives
from setsig.data import filter_sets, load_gmt, load_statistic_matrix, write_gmt
from setsig.errors import DroppedSetsWarning
from setsig.stats import camera_pr
from setsig.utils import ensure_dir


class SetEnrichmentPipeline:
    """Main class for clustering and testing gene sets from files."""

    def __init__(self, config_path: Union[str, Path]):
        """Initialise the pipeline with a configuration file.

        Args:
            config_path: Path to the TOML configuration file
        """
        self.config = PipelineConfig(config_path)
        self.logger = logging.getLogger(__name__)
        self.clusters: Optional[pl.DataFrame] = None
        self.tested_sets: Dict[str, List[str]] = {}
        self.results: Optional[pl.DataFrame] = None
        self._load_input_data()

    def _load_input_data(self):
        """Load and validate input data files."""
        self.logger.debug("Starting to load input data files")

        # Check if required input files exist
        for file_key in ('statistic_file', 'gene_sets_file'):
            file_path = self.config.input_files[file_key]
            if not Path(file_path).is_file():
                error_msg = f"Input file not found: {file_path} (specified as {file_key})"
                self.logger.error(error_msg)
                raise FileNotFoundError(error_msg)

        self.statistic_df = load_statistic_matrix(
            self.config.input_files['statistic_file'],
            gene_col=self.config.gene_col
        )
        self.contrast_names = [col for col in self.statistic_df.columns if col != self.config.gene_col]
        self.gene_sets = load_gmt(self.config.input_files['gene_sets_file'])

        self.logger.info(f"Analyzing {len(self.contrast_names)} contrast(s): {', '.join(self.contrast_names)}")
        self.logger.debug("Finished loading input data files")

    def run(self) -> pl.DataFrame:
        """Run the gene set testing pipeline.

        Returns:
            DataFrame of CAMERA-PR results
        """
        self.logger.info("Starting gene set testing pipeline")
        start_time = time.time()

        # Step 1: Restrict sets to measured genes and filter by size
        self.logger.info("Step 1: Filtering gene sets")
        background = self.statistic_df[self.config.gene_col].to_list()
        sets = filter_sets(
            self.gene_sets,
            background=background,
            min_size=self.config.min_set_size,
            max_size=self.config.max_set_size
        )
        self.logger.info(f"{len(sets)} of {len(self.gene_sets)} gene sets passed size filtering")

        # Step 2: Optionally collapse redundant sets
        if self.config.cluster_sets:
            params = self.config.get_clustering_params()
            self.logger.info(
                f"Step 2: Clustering gene sets ({params['type']} similarity, cutoff {params['cutoff']})"
            )
            self.clusters = cluster_sets(sets, **params)
            keep = select_representatives(
                self.clusters,
                largest=self.config.clustering.get("keep", "largest") == "largest"
            )
            sets = {name: sets[name] for name in keep}
            self.logger.info(f"Kept {len(sets)} representative sets from "
                             f"{self.clusters['cluster'].n_unique()} clusters")
        else:
            self.logger.info("Step 2: Skipping gene set clustering")

        self.tested_sets = sets

        # Step 3: Competitive gene set test
        params = self.config.get_camera_params()
        self.logger.info(
            f"Step 3: Running CAMERA-PR ({'rank-based' if params['use_ranks'] else 'parametric'})"
        )
        # Dropped sets are reported in the pipeline log rather than as warnings
        with warnings.catch_warnings(record=True) as caught:
            warnings.simplefilter("always", DroppedSetsWarning)
            self.results = camera_pr(self.statistic_df, sets, **params)
        for warning in caught:
            if issubclass(warning.category, DroppedSetsWarning):
                self.logger.warning(str(warning.message))
            else:
                warnings.warn_explicit(warning.message, warning.category,
                                       warning.filename, warning.lineno)

        self.save_results()

        self.logger.info(f"Pipeline completed in {time.time() - start_time:.2f} seconds")
        return self.results

    def save_results(self, output_dir: Optional[Union[str, Path]] = None):
        """Save results to the output directory.

        Args:
            output_dir: Output directory, defaults to the configured one
        """
        if self.results is None:
            raise ValueError("No results to save. Run the pipeline first.")

        output_path = ensure_dir(Path(output_dir) if output_dir else self.config.get_output_path())

        results_file = output_path / 'camera_pr_results.tsv'
        self.results.write_csv(results_file, separator='\t')
        self.logger.info(f"Saved results to {results_file}")

        if self.clusters is not None:
            clusters_file = output_path / 'set_clusters.tsv'
            self.clusters.write_csv(clusters_file, separator='\t')
            self.logger.info(f"Saved set clusters to {clusters_file}")

            gmt_file = output_path / 'representative_sets.gmt'
            write_gmt(self.tested_sets, gmt_file)
            self.logger.info(f"Saved representative sets to {gmt_file}")

        if self.config.output_config.get("plots", False):
            # Plotting libraries are only needed when plots are requested
            from setsig.visualise import plot_camera_results, plot_set_similarity

            plot_dir = ensure_dir(output_path / 'plots')
            for path in plot_camera_results(self.results, plot_dir):
                self.logger.info(f"Saved plot to {path}")
            if len(self.tested_sets) > 1:
                path = plot_set_similarity(
                    self.tested_sets,
                    plot_dir / 'set_similarity.png',
                    type=self.config.get_clustering_params()['type']
                )
                self.logger.info(f"Saved plot to {path}")

        config_file = output_path / 'pipeline_config.toml'
        self.config.save_config(config_file)
        self.logger.info(f"Saved configuration to {config_file}")
