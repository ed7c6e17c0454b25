"""
Setup script for alignment-qc-metrics
"""

import os
from setuptools import setup, find_packages

package_identifier = "alignment_qc_metrics"
version_dir = os.path.join('etc', 'versions', package_identifier)
version_filename = 'VERSION'
with open(os.path.join(os.path.dirname(__file__), version_dir, version_filename)) as version_file:
    package_version = version_file.read().strip()

setup(
    name='alignment-qc-metrics',
    version=package_version,
    scripts=['bin/run_alignment_summary.py', 'bin/run_mean_quality_by_cycle.py', 'bin/run_hs_metrics.py'],
    packages=find_packages(exclude=['test']),
    install_requires=['attrs', 'jsonschema', 'pybedtools', 'pyrsistent', 'pysam'],
    data_files=[(version_dir, [os.path.join(version_dir, version_filename)])],
    python_requires='>=3.11',
    description="Alignment QC metrics",
    long_description="Single-pass alignment summary, chimera, adapter, quality-by-cycle and hybrid selection metrics for SAM/BAM/CRAM files",
)
