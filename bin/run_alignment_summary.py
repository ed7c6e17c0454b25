#!/usr/bin/env python3

"""Main script to compute alignment summary metrics"""

import argparse, cProfile, os, sys
from alignment_qc_metrics import alignment_summary, chimera_classifier, command_renderer, read_package_version, validator

LEVELS = ['ALL_READS', 'SAMPLE', 'LIBRARY', 'READ_GROUP']
ORIENTATIONS = ['FR', 'RF', 'TANDEM']

def validate_args(args):
    valid = True

    # flip valid from True to False if a check is failed; never flip back to True
    if args.max_insert_size != None:
        valid = validator.validate_positive_integer(args.max_insert_size, 'Max insert size')
    if args.level != None:
        valid = valid and validator.validate_choices(args.level, LEVELS, 'Accumulation level')
    if args.expected_orientation != None:
        valid = valid and validator.validate_choices(args.expected_orientation, ORIENTATIONS,
                                                     'Pair orientation')
    if args.adapter != None:
        valid = valid and validator.validate_sequences(args.adapter, 'Adapter sequence')
    for path_arg in (args.bam, args.reference):
        if path_arg != None:
            valid = valid and validator.validate_input_file(path_arg)
    for path_arg in (args.out, args.histogram_file, args.log_path):
        if path_arg != None and path_arg != '-':
            # ugly but robust Python idiom to resolve path of parent directory
            parent_path = os.path.abspath(os.path.join(path_arg, os.pardir))
            valid = valid and validator.validate_output_dir(parent_path)
    if args.histogram_file != None and args.out == '-':
        sys.stderr.write("ERROR: -H/--histogram-file requires JSON output to a file\n")
        valid = False
    return valid

def main():
    parser = argparse.ArgumentParser(description='Alignment summary metrics for SAM/BAM/CRAM files.')
    parser.add_argument('-a', '--adapter', metavar='SEQUENCE', action='append',
                        help='Adapter sequence to check unaligned reads against. May be repeated. '+\
                        'Optional; defaults to standard Illumina adapters.')
    parser.add_argument('-A', '--no-alignment-info', action='store_true',
                        help='Count reads only; omit aligned-read metrics.')
    parser.add_argument('-b', '--bam', metavar='PATH', required=True,
                        help='Path to input SAM/BAM/CRAM file. Required.')
    parser.add_argument('-B', '--bisulfite', action='store_true',
                        help='Input is bisulfite sequenced; C->T on the forward strand and G->A '+\
                        'on the reverse strand are not counted as mismatches.')
    parser.add_argument('-D', '--debug', action='store_true',
                        help='Most verbose; write messages of priority DEBUG and higher to log')
    parser.add_argument('-e', '--expected-orientation', metavar='ORIENTATION', action='append',
                        help='Expected orientation of read pairs, one of %s. ' % ', '.join(ORIENTATIONS)+\
                        'May be repeated. Optional; default = FR.')
    parser.add_argument('-H', '--histogram-file', metavar='PATH',
                        help='Path for read length histogram chart. Optional; requires ALL_READS '+\
                        'level and --renderer.')
    parser.add_argument('-i', '--max-insert-size', metavar='INT',
                        help='Pairs with a larger insert size are counted as chimeric. '+\
                        'Optional; default = %i.' % chimera_classifier.DEFAULT_INSERT_SIZE_LIMIT)
    parser.add_argument('-L', '--level', metavar='LEVEL', action='append',
                        help='Metric accumulation level, one of %s. ' % ', '.join(LEVELS)+\
                        'May be repeated. Optional; default = ALL_READS.')
    parser.add_argument('-l', '--log-path', metavar='PATH', help='Path of file where log output '+\
                        'will be appended. Optional, defaults to STDERR.')
    parser.add_argument('-o', '--out', metavar='PATH', required=True,
                        help='Path for JSON output, or - for STDOUT. Required.')
    parser.add_argument('-p', '--profile', action='store_true', help='Write runtime profile to '+\
                        'STDOUT. For development use only. Should not be combined with writing '+\
                        'JSON to STDOUT.')
    parser.add_argument('-r', '--reference', metavar='PATH',
                        help='Path to indexed FASTA reference used to align the input. Optional; '+\
                        'if not supplied, mismatch and error rate metrics are omitted.')
    parser.add_argument('-R', '--renderer', metavar='COMMAND',
                        help='Executable to draw the histogram chart. Called with the JSON output '+\
                        'path, chart path and input name as arguments.')
    parser.add_argument('-v', '--version', action='version',
                        version=read_package_version(),
                        help='Print the version number of alignment-qc-metrics and exit')
    parser.add_argument('-V', '--verbose', action='store_true',
                        help='More verbose; write messages of priority INFO and higher to log')
    args = parser.parse_args()
    if not validate_args(args):
        print("For usage, run with -h or --help")
        exit(1)
    max_insert_size = None if args.max_insert_size == None else int(args.max_insert_size)
    config = {
        alignment_summary.CONFIG_KEY_ADAPTERS: args.adapter,
        alignment_summary.CONFIG_KEY_BAM: args.bam,
        alignment_summary.CONFIG_KEY_BISULFITE: args.bisulfite,
        alignment_summary.CONFIG_KEY_COLLECT_ALIGNMENT_INFO: not args.no_alignment_info,
        alignment_summary.CONFIG_KEY_DEBUG: args.debug,
        alignment_summary.CONFIG_KEY_EXPECTED_ORIENTATIONS: args.expected_orientation,
        alignment_summary.CONFIG_KEY_HISTOGRAM_FILE: args.histogram_file,
        alignment_summary.CONFIG_KEY_LEVELS: args.level,
        alignment_summary.CONFIG_KEY_LOG: args.log_path,
        alignment_summary.CONFIG_KEY_MAX_INSERT_SIZE: max_insert_size,
        alignment_summary.CONFIG_KEY_REFERENCE: args.reference,
        alignment_summary.CONFIG_KEY_VERBOSE: args.verbose
    }
    renderer = None if args.renderer == None else command_renderer(args.renderer)
    if args.profile:
        # sort order = 2, sorts profile by cumulative time
        cProfile.runctx('alignment_summary(config, renderer).write_output(out_path)',
                        {'alignment_summary': alignment_summary, 'config': config,
                         'renderer': renderer, 'out_path': args.out},
                        {},
                        None,
                        2)
    else:
        qc = alignment_summary(config, renderer)
        qc.write_output(args.out)

if __name__ == "__main__":
    main()
