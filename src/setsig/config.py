"""Configuration handling for the gene set testing pipeline."""

import tomli
import tomli_w
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Union


class PipelineConfig:
    """Configuration class for the gene set testing pipeline."""

    def __init__(self, config_path: Union[str, Path]):
        """Initialise the configuration from a TOML file.

        Args:
            config_path: Path to the TOML configuration file
        """
        self.config_path = config_path

        # Load configuration file
        try:
            with open(config_path, "rb") as f:
                self.config = tomli.load(f)
        except FileNotFoundError:
            raise ValueError(f"Error loading configuration file: {config_path} does not exist")
        except Exception as e:
            raise ValueError(f"Error loading configuration file: {str(e)}")

        # Validate required sections
        required_sections = ['input', 'output', 'analysis']
        missing_sections = [section for section in required_sections if section not in self.config]
        if missing_sections:
            raise ValueError(f"Missing required sections in configuration: {', '.join(missing_sections)}")

        # Extract input file paths
        self.input_files = self.config.get("input", {})

        # Validate required input files
        required_input_files = ['statistic_file', 'gene_sets_file']
        missing_files = [file for file in required_input_files if file not in self.input_files]
        if missing_files:
            raise ValueError(f"Missing required input files in configuration: {', '.join(missing_files)}")

        self.gene_col = self.input_files.get("gene_col", "gene_id")

        # Extract output configuration
        self.output_config = self.config.get("output", {})

        # Extract analysis parameters
        self.analysis_params = self.config.get("analysis", {})
        self.use_ranks = bool(self.analysis_params.get("use_ranks", False))
        self.inter_gene_cor = self.analysis_params.get("inter_gene_cor", 0.01)
        self.sort = bool(self.analysis_params.get("sort", True))
        self.adjust_globally = bool(self.analysis_params.get("adjust_globally", False))
        self.min_set_size = int(self.analysis_params.get("min_set_size", 2))
        # 0 means no upper bound
        max_set_size = self.analysis_params.get("max_set_size", 0)
        self.max_set_size = float('inf') if not max_set_size else int(max_set_size)

        # Extract clustering settings
        self.clustering = self.config.get("clustering", {})
        self.cluster_sets = bool(self.clustering.get("enabled", False))
        keep = self.clustering.get("keep", "largest")
        if keep not in ("largest", "smallest"):
            raise ValueError(f"Invalid clustering.keep value '{keep}': use 'largest' or 'smallest'")

    def get_clustering_params(self) -> Dict[str, Any]:
        """Get the keyword arguments for cluster_sets.

        Returns:
            Dictionary with type, cutoff, method and h
        """
        return {
            'type': self.clustering.get("type", "jaccard"),
            'cutoff': float(self.clustering.get("cutoff", 0.85)),
            'method': self.clustering.get("method", "complete"),
            'h': float(self.clustering.get("h", 0.9)),
        }

    def get_camera_params(self) -> Dict[str, Any]:
        """Get the keyword arguments for camera_pr.

        Returns:
            Dictionary with use_ranks, inter_gene_cor, sort, adjust_globally and gene_col
        """
        inter_gene_cor = self.inter_gene_cor
        if isinstance(inter_gene_cor, Mapping):
            inter_gene_cor = dict(inter_gene_cor)
        return {
            'use_ranks': self.use_ranks,
            'inter_gene_cor': inter_gene_cor,
            'sort': self.sort,
            'adjust_globally': self.adjust_globally,
            'gene_col': self.gene_col,
        }

    def get_output_path(self, subdir: Optional[str] = None) -> Path:
        """Get the path to the output directory or a subdirectory within it.

        Args:
            subdir: Optional subdirectory name within the output directory

        Returns:
            Path object for the requested directory
        """
        output_dir = self.output_config.get("output_dir", self.output_config.get("directory", "results"))
        base_path = Path(output_dir)

        # If a subdirectory is specified, append it to the base path
        if subdir:
            return base_path / subdir

        return base_path

    def save_config(self, output_path: Union[str, Path]) -> None:
        """Save the configuration to a TOML file.

        Args:
            output_path: Path to save the configuration file
        """
        with open(output_path, "wb") as f:
            tomli_w.dump(self.config, f)
