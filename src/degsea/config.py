"""Configuration handling for the differential expression and enrichment pipeline."""

from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Union

import tomli
import tomli_w

from degsea.exceptions import ConfigurationError


@dataclass(frozen=True)
class AnalysisSettings:
    """Tunable parameters of one analysis run."""

    min_replicates_per_group: int = 2
    low_count_filter_threshold: int = 1
    enrichment_min_size: int = 15
    enrichment_max_size: int = 500
    permutation_count: int = 1000
    fdr_method: str = 'fdr_bh'
    fdr_alpha: float = 0.05
    dispersion_fit_type: str = 'parametric'
    outlier_sd: float = 2.0
    # False takes the dispersion variance across all samples as one group
    pool_dispersion_within_groups: bool = True
    enrichment_weight: float = 1.0
    num_threads: int = 1


class PipelineConfig:
    """Configuration class for the differential expression and enrichment pipeline."""

    REQUIRED_SECTIONS = ('input', 'output', 'analysis')
    REQUIRED_INPUTS = ('counts_file', 'sample_sheet')

    def __init__(self, config_path: Union[str, Path]):
        """Initialise the configuration from a TOML file.

        Args:
            config_path: Path to the TOML configuration file
        """
        self.config_path = config_path

        try:
            with open(config_path, "rb") as f:
                self.config = tomli.load(f)
        except FileNotFoundError:
            raise ConfigurationError(
                f"Error loading configuration file: {config_path} does not exist"
            )
        except tomli.TOMLDecodeError as e:
            raise ConfigurationError(f"Error loading configuration file: {str(e)}")

        missing_sections = [s for s in self.REQUIRED_SECTIONS if s not in self.config]
        if missing_sections:
            raise ConfigurationError(
                f"Missing required sections in configuration: {', '.join(missing_sections)}",
                {'missing': missing_sections}
            )

        self.input_files = self.config.get("input", {})
        missing_files = [key for key in self.REQUIRED_INPUTS if key not in self.input_files]
        if missing_files:
            raise ConfigurationError(
                f"Missing required input files in configuration: {', '.join(missing_files)}",
                {'missing': missing_files}
            )

        self.output_config = self.config.get("output", {})
        self.analysis_params = self.config.get("analysis", {})
        self.dispersion_params = self.config.get("dispersion", {})
        self.enrichment_params = self.config.get("enrichment", {})

        missing_groups = [key for key in ('group_a', 'group_b') if key not in self.analysis_params]
        if missing_groups:
            raise ConfigurationError(
                f"Missing required analysis parameters: {', '.join(missing_groups)}",
                {'missing': missing_groups}
            )
        self.group_a = str(self.analysis_params['group_a'])
        self.group_b = str(self.analysis_params['group_b'])

        self.sample_column = self.input_files.get('sample_column', 'sample_id')
        self.group_column = self.input_files.get('group_column', 'condition')
        self.num_threads = int(self.analysis_params.get('num_threads', 1))

        self.run_enrichment = bool(self.enrichment_params.get('run', True)) and \
            'gene_sets_file' in self.input_files
        self.random_seed: Optional[int] = self.enrichment_params.get('random_seed')
        if self.run_enrichment and self.random_seed is None:
            raise ConfigurationError(
                "enrichment.random_seed is required when gene set enrichment is run"
            )
        if self.random_seed is not None and (
            isinstance(self.random_seed, bool)
            or not isinstance(self.random_seed, int)
            or self.random_seed < 0
        ):
            raise ConfigurationError(
                f"enrichment.random_seed must be a non-negative integer, got {self.random_seed!r}",
                {'random_seed': self.random_seed}
            )

    def analysis_settings(self) -> AnalysisSettings:
        """Build the analysis settings from the configuration.

        Returns:
            AnalysisSettings with configured values and defaults for the rest
        """
        defaults = AnalysisSettings()
        return AnalysisSettings(
            min_replicates_per_group=int(self.analysis_params.get(
                'min_replicates_per_group', defaults.min_replicates_per_group)),
            low_count_filter_threshold=int(self.analysis_params.get(
                'low_count_filter_threshold', defaults.low_count_filter_threshold)),
            fdr_method=self.analysis_params.get('fdr_method', defaults.fdr_method),
            fdr_alpha=float(self.analysis_params.get('fdr_alpha', defaults.fdr_alpha)),
            dispersion_fit_type=self.dispersion_params.get('fit_type', defaults.dispersion_fit_type),
            outlier_sd=float(self.dispersion_params.get('outlier_sd', defaults.outlier_sd)),
            pool_dispersion_within_groups=bool(self.dispersion_params.get(
                'pool_within_groups', defaults.pool_dispersion_within_groups)),
            enrichment_min_size=int(self.enrichment_params.get('min_size', defaults.enrichment_min_size)),
            enrichment_max_size=int(self.enrichment_params.get('max_size', defaults.enrichment_max_size)),
            permutation_count=int(self.enrichment_params.get(
                'permutation_count', defaults.permutation_count)),
            enrichment_weight=float(self.enrichment_params.get('weight', defaults.enrichment_weight)),
            num_threads=self.num_threads,
        )

    def get_output_path(self, subdir: Optional[str] = None) -> Path:
        """Get the path to the output directory or a subdirectory within it.

        Args:
            subdir: Optional subdirectory name within the output directory

        Returns:
            Path object for the requested directory
        """
        base_path = Path(self.output_config.get("directory", "results"))
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
