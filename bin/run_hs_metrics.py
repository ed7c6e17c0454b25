#!/usr/bin/env python3

"""Main script to compute hybrid selection metrics"""

import argparse, os, sys
from alignment_qc_metrics import hs_metric_collector, hs_metrics, read_package_version, validator

def validate_args(args):
    valid = True

    # flip valid from True to False if a check is failed; never flip back to True
    for (arg, name) in [
            (args.min_base_quality, 'Minimum base quality'),
            (args.min_mapq, 'Minimum mapping quality'),
            (args.near_distance, 'Near distance')]:
        if arg != None:
            valid = valid and validator.validate_positive_integer(arg, name)
    for path_arg in (args.bam, args.baits, args.reference, args.targets):
        if path_arg != None:
            valid = valid and validator.validate_input_file(path_arg)
    for path_arg in (args.out, args.log_path):
        if path_arg != None and path_arg != '-':
            parent_path = os.path.abspath(os.path.join(path_arg, os.pardir))
            valid = valid and validator.validate_output_dir(parent_path)
    if args.duplicates_marked and args.duplicates_not_marked:
        sys.stderr.write("ERROR: --duplicates-marked and --duplicates-not-marked are incompatible\n")
        valid = False
    return valid

def main():
    parser = argparse.ArgumentParser(description='Hybrid selection metrics for SAM/BAM/CRAM files.')
    parser.add_argument('-b', '--bam', metavar='PATH', required=True,
                        help='Path to input SAM/BAM/CRAM file. Required.')
    parser.add_argument('-B', '--baits', metavar='PATH', required=True,
                        help='Path to BED file of bait intervals. Required.')
    parser.add_argument('-d', '--duplicates-marked', action='store_true',
                        help='Duplicates are marked in the input. Optional; by default, this is '+\
                        'inferred from @PG lines in the header.')
    parser.add_argument('-D', '--debug', action='store_true',
                        help='Most verbose; write messages of priority DEBUG and higher to log')
    parser.add_argument('-l', '--log-path', metavar='PATH', help='Path of file where log output '+\
                        'will be appended. Optional, defaults to STDERR.')
    parser.add_argument('-m', '--min-mapq', metavar='INT',
                        help='Minimum mapping quality for coverage. Optional; default = %i.' \
                        % hs_metric_collector.DEFAULT_MIN_MAPQ)
    parser.add_argument('-n', '--bait-set-name', metavar='NAME',
                        help='Name of the bait set. Optional; defaults to the bait file name.')
    parser.add_argument('-N', '--near-distance', metavar='INT',
                        help='Distance from a bait for bases to count as near bait. '+\
                        'Optional; default = %i.' % hs_metric_collector.DEFAULT_NEAR_DISTANCE)
    parser.add_argument('-o', '--out', metavar='PATH', required=True,
                        help='Path for JSON output, or - for STDOUT. Required.')
    parser.add_argument('-q', '--min-base-quality', metavar='INT',
                        help='Minimum base quality for coverage. Optional; default = %i.' \
                        % hs_metric_collector.DEFAULT_MIN_BASE_QUALITY)
    parser.add_argument('-r', '--reference', metavar='PATH',
                        help='Path to indexed FASTA reference. Optional; required to read CRAM '+\
                        'input whose reference is not available locally.')
    parser.add_argument('-t', '--targets', metavar='PATH', required=True,
                        help='Path to BED file of target intervals. Required.')
    parser.add_argument('-u', '--duplicates-not-marked', action='store_true',
                        help='Duplicates are not marked in the input; library size and HS '+\
                        'penalties will be omitted.')
    parser.add_argument('-v', '--version', action='version',
                        version=read_package_version(),
                        help='Print the version number of alignment-qc-metrics and exit')
    parser.add_argument('-V', '--verbose', action='store_true',
                        help='More verbose; write messages of priority INFO and higher to log')
    args = parser.parse_args()
    if not validate_args(args):
        print("For usage, run with -h or --help")
        exit(1)
    duplicates_marked = None
    if args.duplicates_marked:
        duplicates_marked = True
    elif args.duplicates_not_marked:
        duplicates_marked = False
    config = {
        hs_metrics.CONFIG_KEY_BAITS: args.baits,
        hs_metrics.CONFIG_KEY_BAIT_SET_NAME: args.bait_set_name,
        hs_metrics.CONFIG_KEY_BAM: args.bam,
        hs_metrics.CONFIG_KEY_DEBUG: args.debug,
        hs_metrics.CONFIG_KEY_DUPLICATES_MARKED: duplicates_marked,
        hs_metrics.CONFIG_KEY_LOG: args.log_path,
        hs_metrics.CONFIG_KEY_MIN_BASE_QUALITY: None if args.min_base_quality == None \
                                                else int(args.min_base_quality),
        hs_metrics.CONFIG_KEY_MIN_MAPQ: None if args.min_mapq == None else int(args.min_mapq),
        hs_metrics.CONFIG_KEY_NEAR_DISTANCE: None if args.near_distance == None \
                                             else int(args.near_distance),
        hs_metrics.CONFIG_KEY_REFERENCE: args.reference,
        hs_metrics.CONFIG_KEY_TARGETS: args.targets,
        hs_metrics.CONFIG_KEY_VERBOSE: args.verbose
    }
    hs_metrics(config).write_output(args.out)

if __name__ == "__main__":
    main()
