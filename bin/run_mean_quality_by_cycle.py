#!/usr/bin/env python3

"""Main script to compute mean base quality by cycle"""

import argparse, os, sys
from alignment_qc_metrics import command_renderer, mean_quality_by_cycle, read_package_version, validator

def validate_args(args):
    valid = True

    # flip valid from True to False if a check is failed; never flip back to True
    for path_arg in (args.bam, args.reference):
        if path_arg != None:
            valid = valid and validator.validate_input_file(path_arg)
    for path_arg in (args.out, args.chart_file, args.log_path):
        if path_arg != None and path_arg != '-':
            parent_path = os.path.abspath(os.path.join(path_arg, os.pardir))
            valid = valid and validator.validate_output_dir(parent_path)
    if args.chart_file != None and args.out == '-':
        sys.stderr.write("ERROR: -c/--chart-file requires JSON output to a file\n")
        valid = False
    return valid

def main():
    parser = argparse.ArgumentParser(description='Mean base quality by cycle for SAM/BAM/CRAM files.')
    parser.add_argument('-a', '--aligned-reads-only', action='store_true',
                        help='Use aligned reads only.')
    parser.add_argument('-b', '--bam', metavar='PATH', required=True,
                        help='Path to input SAM/BAM/CRAM file. Required.')
    parser.add_argument('-c', '--chart-file', metavar='PATH',
                        help='Path for mean quality by cycle chart. Optional; requires --renderer.')
    parser.add_argument('-D', '--debug', action='store_true',
                        help='Most verbose; write messages of priority DEBUG and higher to log')
    parser.add_argument('-f', '--pf-reads-only', action='store_true',
                        help='Use reads passing vendor quality filters only.')
    parser.add_argument('-l', '--log-path', metavar='PATH', help='Path of file where log output '+\
                        'will be appended. Optional, defaults to STDERR.')
    parser.add_argument('-o', '--out', metavar='PATH', required=True,
                        help='Path for JSON output, or - for STDOUT. Required.')
    parser.add_argument('-r', '--reference', metavar='PATH',
                        help='Path to indexed FASTA reference. Optional; required to read CRAM '+\
                        'input whose reference is not available locally.')
    parser.add_argument('-R', '--renderer', metavar='COMMAND',
                        help='Executable to draw the chart. Called with the JSON output path, '+\
                        'chart path, input name and subtitle as arguments.')
    parser.add_argument('-v', '--version', action='version',
                        version=read_package_version(),
                        help='Print the version number of alignment-qc-metrics and exit')
    parser.add_argument('-V', '--verbose', action='store_true',
                        help='More verbose; write messages of priority INFO and higher to log')
    args = parser.parse_args()
    if not validate_args(args):
        print("For usage, run with -h or --help")
        exit(1)
    config = {
        mean_quality_by_cycle.CONFIG_KEY_ALIGNED_READS_ONLY: args.aligned_reads_only,
        mean_quality_by_cycle.CONFIG_KEY_BAM: args.bam,
        mean_quality_by_cycle.CONFIG_KEY_CHART_FILE: args.chart_file,
        mean_quality_by_cycle.CONFIG_KEY_DEBUG: args.debug,
        mean_quality_by_cycle.CONFIG_KEY_LOG: args.log_path,
        mean_quality_by_cycle.CONFIG_KEY_PF_READS_ONLY: args.pf_reads_only,
        mean_quality_by_cycle.CONFIG_KEY_REFERENCE: args.reference,
        mean_quality_by_cycle.CONFIG_KEY_VERBOSE: args.verbose
    }
    renderer = None if args.renderer == None else command_renderer(args.renderer)
    mean_quality_by_cycle(config, renderer).write_output(args.out)

if __name__ == "__main__":
    main()
