#! /usr/bin/env python3

"""Classes to run the single-pass collectors over SAM/BAM/CRAM input"""

import logging
import os
import re
import subprocess
import sys

import jsonschema
import pybedtools
import pysam

import alignment_qc_metrics
from alignment_qc_metrics.adapters import illumina_adapters
from alignment_qc_metrics.alignment_summary import alignment_summary_collector, metric_accumulation_level
from alignment_qc_metrics.chimeras import chimera_classifier, pair_orientation
from alignment_qc_metrics.hs_metrics import hs_metric_collector
from alignment_qc_metrics.metrics_file import metrics_file
from alignment_qc_metrics.quality_by_cycle import quality_by_cycle_collector
from alignment_qc_metrics.records import aligned_record, read_group, reference_window


class base_constants(object):
    """
    Class for shared constants
    """

    ALIGNMENT_REF_KEY = 'alignment reference'
    INPUT_KEY = 'input'
    PACKAGE_VERSION_KEY = 'package version'

    # shared keys for config dictionary
    CONFIG_KEY_BAM = 'bam'
    CONFIG_KEY_DEBUG = 'debug'
    CONFIG_KEY_LOG = 'log path'
    CONFIG_KEY_REFERENCE = 'reference'
    CONFIG_KEY_VERBOSE = 'verbose'

    # schema for the shared config keys; subclasses add their own properties
    BASE_SCHEMA_PROPERTIES = {
        CONFIG_KEY_BAM: {'type': 'string'},
        CONFIG_KEY_DEBUG: {'type': 'boolean'},
        CONFIG_KEY_LOG: {'type': ['string', 'null']},
        CONFIG_KEY_REFERENCE: {'type': ['string', 'null']},
        CONFIG_KEY_VERBOSE: {'type': 'boolean'},
    }


class base(base_constants):
    """
    Class for methods shared between the metric runners
    """

    SCHEMA_PROPERTIES = {}

    def configure_logger(self, log_path=None, debug=False, verbose=False):
        logger = logging.getLogger(__name__)
        log_level = logging.WARN
        if debug:
            log_level = logging.DEBUG
        elif verbose:
            log_level = logging.INFO
        logger.setLevel(log_level)
        handler = None
        if log_path==None:
            handler = logging.StreamHandler()
        else:
            handler = logging.FileHandler(log_path)
        handler.setLevel(log_level)
        formatter = logging.Formatter('%(asctime)s %(name)s %(levelname)s: %(message)s',
                                      datefmt='%Y-%m-%d_%H:%M:%S')
        handler.setFormatter(formatter)
        logger.addHandler(handler)
        return logger

    def validate_key_sets(self, found, expected):
        """Compare set objects containing config keys; raise an informative error on mismatch"""
        if not expected == found:
            not_found_set = expected - found
            not_found = not_found_set if len(not_found_set) > 0 else None
            not_expected_set = found - expected
            not_expected = not_expected_set if len(not_expected_set) > 0 else None
            msg = "Config fields are not valid\n"
            msg = msg+"Fields expected and not found: "+str(not_found)+"\n"
            msg = msg+"Fields found and not expected: "+str(not_expected)+"\n"
            # do not log this message; logger not yet initialized
            raise ValueError(msg)

    def validate_config_fields(self, config):
        """ Validate keys and value types of the config dictionary for __init__ """
        properties = dict(self.BASE_SCHEMA_PROPERTIES)
        properties.update(self.SCHEMA_PROPERTIES)
        self.validate_key_sets(set(config.keys()), set(properties.keys()))
        schema = {
            'type': 'object',
            'properties': properties,
        }
        try:
            jsonschema.validate(instance=config, schema=schema)
        except jsonschema.ValidationError as ve:
            msg = "Config values are not valid: %s" % ve.message
            raise ValueError(msg) from ve

    def open_alignments(self):
        """Open the input; CRAM is decoded against the configured reference, if any"""
        return pysam.AlignmentFile(self.bam_path, reference_filename=self.reference)

    def read_records(self, bam, reference_path=None):
        """
        Generator over (aligned_record, reference_window) pairs in file order.
        Window is None if there is no reference, the read is unmapped, or the
        contig is not in the reference.
        """
        fasta = pysam.FastaFile(reference_path) if reference_path != None else None
        missing_contigs = set()
        try:
            for read in bam.fetch(until_eof=True):
                record = aligned_record.from_segment(read)
                window = None
                if fasta != None and not read.is_unmapped and read.reference_name not in missing_contigs:
                    start = read.reference_start
                    end = record.reference_end
                    try:
                        window = reference_window(start, fasta.fetch(read.reference_name, start, end))
                    except (KeyError, ValueError):
                        missing_contigs.add(read.reference_name)
                        self.logger.warning("Contig %s not found in reference %s" \
                                            % (read.reference_name, reference_path))
                yield (record, window)
        finally:
            if fasta != None:
                fasta.close()

    def write_output(self, out_path):
        self.metrics.write_output(out_path)


def command_renderer(command):
    """Chart renderer which runs an external command with the given arguments"""
    def render(*args):
        return subprocess.call([command] + list(args))
    return render


class validator:

    """Utility functions for validating arguments to command-line scripts"""

    @staticmethod
    def validate_input_file(path_arg):
        valid = True
        if not os.path.exists(path_arg):
            sys.stderr.write("ERROR: Path %s does not exist.\n" % path_arg)
            valid = False
        elif not os.path.isfile(path_arg):
            sys.stderr.write("ERROR: Path %s is not a file.\n" % path_arg)
            valid = False
        elif not os.access(path_arg, os.R_OK):
            sys.stderr.write("ERROR: Path %s is not readable.\n" % path_arg)
            valid = False
        return valid

    @staticmethod
    def validate_output_dir(dir_path):
        valid = True
        if not os.path.exists(dir_path):
            sys.stderr.write("ERROR: Directory %s does not exist.\n" % dir_path)
            valid = False
        elif not os.path.isdir(dir_path):
            sys.stderr.write("ERROR: Path %s is not a directory.\n" % dir_path)
            valid = False
        elif not os.access(dir_path, os.W_OK):
            sys.stderr.write("ERROR: Directory %s is not writable.\n" % dir_path)
            valid = False
        return valid

    @staticmethod
    def validate_positive_integer(arg, name):
        param = None
        valid = True
        try:
            param = int(arg)
        except ValueError:
            sys.stderr.write("ERROR: %s must be an integer.\n" % name)
            valid = False
        if param != None and param < 0:
            sys.stderr.write("ERROR: %s cannot be negative.\n" % name)
            valid = False
        return valid

    @staticmethod
    def validate_choices(args, choices, name):
        valid = True
        for arg in args:
            if arg not in choices:
                sys.stderr.write("ERROR: %s '%s' is not one of %s.\n" % (name, arg, ', '.join(choices)))
                valid = False
        return valid

    @staticmethod
    def validate_sequences(args, name):
        valid = True
        for arg in args:
            if not re.match('^[ACGTNacgtn]+$', arg):
                sys.stderr.write("ERROR: %s '%s' must contain only A, C, G, T or N.\n" % (name, arg))
                valid = False
        return valid


class alignment_summary(base):

    """
    Alignment summary metrics for one input file, at the configured accumulation levels.
    If a chart is requested, 'renderer' is called after the metrics are written, as
    renderer(metrics_path, chart_path, input_name), and must return 0 on success.
    """

    CONFIG_KEY_ADAPTERS = 'adapter sequences'
    CONFIG_KEY_BISULFITE = 'bisulfite'
    CONFIG_KEY_COLLECT_ALIGNMENT_INFO = 'collect alignment information'
    CONFIG_KEY_EXPECTED_ORIENTATIONS = 'expected pair orientations'
    CONFIG_KEY_HISTOGRAM_FILE = 'histogram file'
    CONFIG_KEY_LEVELS = 'metric accumulation levels'
    CONFIG_KEY_MAX_INSERT_SIZE = 'max insert size'
    INSERT_MAX_KEY = 'max insert size'

    LEVEL_NAMES = [level.value for level in metric_accumulation_level]
    ORIENTATION_NAMES = [orientation.value for orientation in pair_orientation]
    SCHEMA_PROPERTIES = {
        CONFIG_KEY_ADAPTERS: {'type': ['array', 'null'], 'items': {'type': 'string'}},
        CONFIG_KEY_BISULFITE: {'type': 'boolean'},
        CONFIG_KEY_COLLECT_ALIGNMENT_INFO: {'type': 'boolean'},
        CONFIG_KEY_EXPECTED_ORIENTATIONS: {
            'type': ['array', 'null'],
            'items': {'enum': ORIENTATION_NAMES}
        },
        CONFIG_KEY_HISTOGRAM_FILE: {'type': ['string', 'null']},
        CONFIG_KEY_LEVELS: {'type': ['array', 'null'], 'items': {'enum': LEVEL_NAMES}},
        CONFIG_KEY_MAX_INSERT_SIZE: {'type': ['integer', 'null'], 'minimum': 0},
    }

    def __init__(self, config, renderer=None):
        self.validate_config_fields(config)
        # read instance variables from config
        self.logger = self.configure_logger(
            config[self.CONFIG_KEY_LOG],
            config[self.CONFIG_KEY_DEBUG],
            config[self.CONFIG_KEY_VERBOSE]
        )
        adapters = config[self.CONFIG_KEY_ADAPTERS]
        self.adapters = adapters if adapters != None else illumina_adapters.default_adapter_sequences()
        self.bam_path = config[self.CONFIG_KEY_BAM]
        self.is_bisulfite = config[self.CONFIG_KEY_BISULFITE]
        self.collect_alignment_info = config[self.CONFIG_KEY_COLLECT_ALIGNMENT_INFO]
        orientations = config[self.CONFIG_KEY_EXPECTED_ORIENTATIONS]
        if orientations == None:
            self.expected_orientations = chimera_classifier.DEFAULT_EXPECTED_ORIENTATIONS
        else:
            self.expected_orientations = frozenset(pair_orientation(o) for o in orientations)
        levels = config[self.CONFIG_KEY_LEVELS]
        if levels == None:
            self.levels = [metric_accumulation_level.ALL_READS]
        else:
            self.levels = [metric_accumulation_level(level) for level in levels]
        insert_max = config[self.CONFIG_KEY_MAX_INSERT_SIZE]
        self.max_insert_size = insert_max if insert_max != None \
                               else chimera_classifier.DEFAULT_INSERT_SIZE_LIMIT
        self.reference = config[self.CONFIG_KEY_REFERENCE]
        self.histogram_file = self.check_histogram_file(config[self.CONFIG_KEY_HISTOGRAM_FILE])
        self.renderer = renderer
        self.package_version = alignment_qc_metrics.read_package_version()
        self.metrics = None
        # find metrics; if an error occurs, do logging before exit
        try:
            self._find_metrics()
        except Exception as e:
            self.logger.exception("Unexpected error: {0}".format(e))
            raise

    def check_histogram_file(self, histogram_file):
        """Read length histograms are only made for ALL_READS; disable the chart otherwise"""
        if histogram_file != None and metric_accumulation_level.ALL_READS not in self.levels:
            msg = "Read length histogram is calculated on all reads only, but ALL_READS was not "+\
                  "included in the accumulation levels. Histogram chart will not be generated."
            self.logger.warning(msg)
            return None
        return histogram_file

    def _find_metrics(self):
        self.logger.info("Started alignment summary processing")
        with self.open_alignments() as bam:
            if len(bam.references) == 0:
                self.logger.warning("%s has no sequence dictionary. If any reads are aligned, " \
                                    % self.bam_path + "alignment summary metrics will be incomplete.")
            collector = alignment_summary_collector(
                self.levels,
                read_group.from_header(bam.header),
                collect_alignment_info=self.collect_alignment_info,
                adapters=self.adapters,
                max_insert_size=self.max_insert_size,
                expected_orientations=self.expected_orientations,
                is_bisulfite=self.is_bisulfite,
                reference_available=self.reference != None,
                logger=self.logger
            )
            total = 0
            for (record, window) in self.read_records(bam, self.reference):
                collector.accept_record(record, window)
                total += 1
        self.logger.debug("Read %d records from %s", total, self.bam_path)
        (rows, results) = collector.finish()
        header = {
            self.INPUT_KEY: self.bam_path,
            self.ALIGNMENT_REF_KEY: self.reference,
            self.INSERT_MAX_KEY: self.max_insert_size,
            self.PACKAGE_VERSION_KEY: self.package_version,
            'expected pair orientations': sorted(o.value for o in self.expected_orientations),
            'metric accumulation levels': [level.value for level in collector.levels],
            'bisulfite': self.is_bisulfite,
        }
        self.metrics = metrics_file(header, self.logger)
        for row in rows:
            self.metrics.add_row(row)
        for hist in results:
            self.metrics.add_histogram(hist)
        self.logger.info("Finished alignment summary processing")

    def write_output(self, out_path):
        self.metrics.write_output(out_path)
        if self.histogram_file == None:
            return
        if self.renderer == None:
            self.logger.warning("No chart renderer available; histogram file %s not written" \
                                % self.histogram_file)
        elif all(hist.is_empty() for hist in self.metrics.get_histograms()):
            self.logger.warning("No read length histograms to plot.")
        else:
            input_name = os.path.basename(self.bam_path)
            result = self.renderer(out_path, self.histogram_file, input_name)
            if result != 0:
                msg = "Chart renderer failed with return code %s" % result
                self.logger.error(msg)
                raise RuntimeError(msg)


class mean_quality_by_cycle(base):

    """
    Mean base quality by cycle, optionally restricted to aligned and/or PF reads.
    If a chart is requested, 'renderer' is called after the metrics are written, as
    renderer(metrics_path, chart_path, input_name, subtitle), and must return 0 on
    success. The subtitle is the library name if the input has a single read group.
    """

    CONFIG_KEY_ALIGNED_READS_ONLY = 'aligned reads only'
    CONFIG_KEY_CHART_FILE = 'chart file'
    CONFIG_KEY_PF_READS_ONLY = 'pf reads only'
    SCHEMA_PROPERTIES = {
        CONFIG_KEY_ALIGNED_READS_ONLY: {'type': 'boolean'},
        CONFIG_KEY_CHART_FILE: {'type': ['string', 'null']},
        CONFIG_KEY_PF_READS_ONLY: {'type': 'boolean'},
    }

    def __init__(self, config, renderer=None):
        self.validate_config_fields(config)
        self.logger = self.configure_logger(
            config[self.CONFIG_KEY_LOG],
            config[self.CONFIG_KEY_DEBUG],
            config[self.CONFIG_KEY_VERBOSE]
        )
        self.bam_path = config[self.CONFIG_KEY_BAM]
        self.aligned_reads_only = config[self.CONFIG_KEY_ALIGNED_READS_ONLY]
        self.chart_file = config[self.CONFIG_KEY_CHART_FILE]
        self.pf_reads_only = config[self.CONFIG_KEY_PF_READS_ONLY]
        self.reference = config[self.CONFIG_KEY_REFERENCE]
        self.renderer = renderer
        self.package_version = alignment_qc_metrics.read_package_version()
        self.metrics = None
        self.no_valid_bases = False
        self.subtitle = ''
        try:
            self._find_metrics()
        except Exception as e:
            self.logger.exception("Unexpected error: {0}".format(e))
            raise

    def _find_metrics(self):
        self.logger.info("Started mean quality by cycle processing")
        collector = quality_by_cycle_collector(self.aligned_reads_only, self.pf_reads_only)
        with self.open_alignments() as bam:
            groups = read_group.from_header(bam.header)
            if len(groups) == 1 and groups[0].library != None:
                self.subtitle = groups[0].library
            for (record, window) in self.read_records(bam):
                collector.accept_record(record)
        self.no_valid_bases = collector.is_empty()
        if self.no_valid_bases:
            self.logger.warning("No valid bases found in input file %s" % self.bam_path)
        header = {
            self.INPUT_KEY: self.bam_path,
            self.ALIGNMENT_REF_KEY: self.reference,
            self.PACKAGE_VERSION_KEY: self.package_version,
            'aligned reads only': self.aligned_reads_only,
            'pf reads only': self.pf_reads_only,
        }
        self.metrics = metrics_file(header, self.logger)
        for hist in collector.finish():
            self.metrics.add_histogram(hist)
        self.logger.info("Finished mean quality by cycle processing")

    def write_output(self, out_path):
        self.metrics.write_output(out_path)
        if self.chart_file == None:
            return
        if self.no_valid_bases:
            self.logger.warning("No valid bases found in input file %s. No plot will be produced." \
                                % self.bam_path)
        elif self.renderer == None:
            self.logger.warning("No chart renderer available; chart file %s not written" \
                                % self.chart_file)
        else:
            input_name = os.path.basename(self.bam_path)
            result = self.renderer(out_path, self.chart_file, input_name, self.subtitle)
            if result != 0:
                msg = "Chart renderer failed with return code %s" % result
                self.logger.error(msg)
                raise RuntimeError(msg)


class hs_metrics(base):

    """Hybrid-selection metrics against bait and target BED files"""

    CONFIG_KEY_BAITS = 'baits'
    CONFIG_KEY_BAIT_SET_NAME = 'bait set name'
    CONFIG_KEY_DUPLICATES_MARKED = 'duplicates marked'
    CONFIG_KEY_MIN_BASE_QUALITY = 'minimum base quality'
    CONFIG_KEY_MIN_MAPQ = 'minimum mapping quality'
    CONFIG_KEY_NEAR_DISTANCE = 'near distance'
    CONFIG_KEY_TARGETS = 'targets'
    SCHEMA_PROPERTIES = {
        CONFIG_KEY_BAITS: {'type': 'string'},
        CONFIG_KEY_BAIT_SET_NAME: {'type': ['string', 'null']},
        CONFIG_KEY_DUPLICATES_MARKED: {'type': ['boolean', 'null']},
        CONFIG_KEY_MIN_BASE_QUALITY: {'type': ['integer', 'null'], 'minimum': 0},
        CONFIG_KEY_MIN_MAPQ: {'type': ['integer', 'null'], 'minimum': 0},
        CONFIG_KEY_NEAR_DISTANCE: {'type': ['integer', 'null'], 'minimum': 0},
        CONFIG_KEY_TARGETS: {'type': 'string'},
    }
    # @PG programs which mark duplicates
    DUPLICATE_MARKERS = re.compile('markduplicates|markdup|samblaster|sambamba', re.IGNORECASE)

    def __init__(self, config):
        self.validate_config_fields(config)
        self.logger = self.configure_logger(
            config[self.CONFIG_KEY_LOG],
            config[self.CONFIG_KEY_DEBUG],
            config[self.CONFIG_KEY_VERBOSE]
        )
        self.bam_path = config[self.CONFIG_KEY_BAM]
        self.bait_path = config[self.CONFIG_KEY_BAITS]
        self.reference = config[self.CONFIG_KEY_REFERENCE]
        self.target_path = config[self.CONFIG_KEY_TARGETS]
        name = config[self.CONFIG_KEY_BAIT_SET_NAME]
        self.bait_set_name = name if name != None else re.sub(r'\.bed$', '', os.path.basename(self.bait_path))
        self.duplicates_marked = config[self.CONFIG_KEY_DUPLICATES_MARKED]
        self.settings = {}
        for (key, default) in [
                (self.CONFIG_KEY_MIN_BASE_QUALITY, hs_metric_collector.DEFAULT_MIN_BASE_QUALITY),
                (self.CONFIG_KEY_MIN_MAPQ, hs_metric_collector.DEFAULT_MIN_MAPQ),
                (self.CONFIG_KEY_NEAR_DISTANCE, hs_metric_collector.DEFAULT_NEAR_DISTANCE)]:
            self.settings[key] = config[key] if config[key] != None else default
        self.package_version = alignment_qc_metrics.read_package_version()
        self.metrics = None
        try:
            self._find_metrics()
        except Exception as e:
            self.logger.exception("Unexpected error: {0}".format(e))
            raise

    def read_intervals(self, bed_path):
        intervals = pybedtools.BedTool(bed_path)
        self.logger.debug("Read %d intervals from %s", intervals.count(), bed_path)
        return intervals

    def header_marks_duplicates(self, header):
        for program in header.to_dict().get('PG', []):
            for field in ('ID', 'PN', 'CL'):
                if self.DUPLICATE_MARKERS.search(str(program.get(field, ''))):
                    return True
        return False

    def _find_metrics(self):
        self.logger.info("Started hybrid selection metrics processing")
        baits = self.read_intervals(self.bait_path)
        targets = self.read_intervals(self.target_path)
        with self.open_alignments() as bam:
            duplicates_marked = self.duplicates_marked
            if duplicates_marked == None:
                duplicates_marked = self.header_marks_duplicates(bam.header)
                self.logger.info("Duplicate marking found in header: %s", duplicates_marked)
            collector = hs_metric_collector(
                baits,
                targets,
                bam.references,
                bam.lengths,
                bait_set_name=self.bait_set_name,
                duplicates_marked=duplicates_marked,
                near_distance=self.settings[self.CONFIG_KEY_NEAR_DISTANCE],
                minimum_mapping_quality=self.settings[self.CONFIG_KEY_MIN_MAPQ],
                minimum_base_quality=self.settings[self.CONFIG_KEY_MIN_BASE_QUALITY],
                logger=self.logger
            )
            for (record, window) in self.read_records(bam):
                collector.accept_record(record)
        (row, results) = collector.finish()
        header = {
            self.INPUT_KEY: self.bam_path,
            self.ALIGNMENT_REF_KEY: self.reference,
            self.PACKAGE_VERSION_KEY: self.package_version,
            'baits': os.path.split(self.bait_path)[-1],
            'targets': os.path.split(self.target_path)[-1],
        }
        header.update(self.settings)
        self.metrics = metrics_file(header, self.logger)
        self.metrics.add_row(row)
        for hist in results:
            self.metrics.add_histogram(hist)
        self.logger.info("Finished hybrid selection metrics processing")
