
from .adapters import adapter_matcher, illumina_adapters
from .alignment_summary import alignment_summary_collector, metric_accumulation_level, per_unit_accumulator
from .chimeras import chimera_classifier, chimera_verdict, pair_orientation
from .driver import alignment_summary, command_renderer, hs_metrics, mean_quality_by_cycle, validator
from .hs_metrics import estimate_library_size, hs_metric_collector
from .quality_by_cycle import quality_by_cycle_collector
from .records import aligned_record, read_group, reference_window

# collector and record classes are exported for tests
# driver classes, 'command_renderer' and 'validator' are exported for the scripts in bin/

import os

def read_package_version():
    """
    This method depends on relative path to the VERSION file
    So it has been placed in the package __init__ file, whose location will never change

    VERSION file is in 'etc/versions/alignment_qc_metrics'
    'etc' directory may be in one of two places relative to __init__.py:
    - Parent directory, if testing the source code
    - 4 directories up, following install, eg:
      - alignment-qc-metrics-0.1.0/etc/versions/alignment_qc_metrics/VERSION
      - alignment-qc-metrics-0.1.0/lib/python3.12/site-packages/alignment_qc_metrics/__init__.py
    """
    in_path = None
    ver_path = os.path.join('etc', 'versions', 'alignment_qc_metrics', 'VERSION')
    test_path = os.path.realpath(os.path.join(os.path.dirname(__file__), os.pardir, ver_path))
    install_path = os.path.realpath(os.path.join(os.path.dirname(__file__), *[os.pardir]*4, ver_path))
    if os.path.exists(test_path):
        in_path = test_path
    elif os.path.exists(install_path):
        in_path = install_path
    else:
        raise FileNotFoundError("Cannot find VERSION file; bad installation?")
    with open(in_path) as version_file:
        package_version = version_file.read().strip()
    return package_version
