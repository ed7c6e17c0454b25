#! /usr/bin/env python3

import json, os, subprocess, sys, tempfile, unittest

import pysam

from alignment_qc_metrics import alignment_summary, hs_metrics, illumina_adapters, \
    mean_quality_by_cycle, read_package_version

class test(unittest.TestCase):

    REFERENCE = 'ACGT'*250

    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory(prefix='alignment_qc_test_')
        self.tmpdir = self.tmp.name
        self.testdir = os.path.dirname(os.path.realpath(__file__))
        self.log_path = os.path.join(self.tmpdir, 'test.log')
        self.debug = False
        self.verbose = False
        self.reference_path = self.write_reference()
        self.bam_path = self.write_bam()
        self.bait_path = self.write_bed('baits.bed', [('chr1', 100, 200)])
        self.target_path = self.write_bed('targets.bed', [('chr1', 120, 180)])
        #self.maxDiff = None # uncomment to show the full output diff

    def write_reference(self):
        fasta_path = os.path.join(self.tmpdir, 'ref.fa')
        with open(fasta_path, 'w') as out:
            print('>chr1', file=out)
            for i in range(0, len(self.REFERENCE), 60):
                print(self.REFERENCE[i:i+60], file=out)
        pysam.faidx(fasta_path)
        return fasta_path

    def write_bed(self, name, intervals):
        bed_path = os.path.join(self.tmpdir, name)
        with open(bed_path, 'w') as out:
            for interval in intervals:
                print("\t".join([str(x) for x in interval]), file=out)
        return bed_path

    def make_segment(self, header, name, flag, sequence, start=-1, mate_start=-1, tlen=0):
        segment = pysam.AlignedSegment(header)
        segment.query_name = name
        segment.flag = flag
        # setting the sequence resets qualities, so set it first
        segment.query_sequence = sequence
        segment.query_qualities = pysam.qualitystring_to_array('I'*len(sequence))
        if start >= 0:
            segment.reference_id = 0
            segment.reference_start = start
            segment.mapping_quality = 60
            segment.cigartuples = [(0, len(sequence))]
        else:
            segment.reference_id = -1
            segment.reference_start = -1
        if mate_start >= 0:
            segment.next_reference_id = 0
            segment.next_reference_start = mate_start
        else:
            segment.next_reference_id = -1
            segment.next_reference_start = -1
        segment.template_length = tlen
        segment.set_tag('RG', 'rg1')
        return segment

    def make_header(self):
        return pysam.AlignmentHeader.from_dict({
            'HD': {'VN': '1.6', 'SO': 'unsorted'},
            'SQ': [{'SN': 'chr1', 'LN': len(self.REFERENCE)}],
            'RG': [{'ID': 'rg1', 'SM': 'sample1', 'LB': 'library1'}],
        })

    def write_bam(self, name='test.bam', mode='wb', unmapped_only=False):
        """A normal pair, plus one unmapped read starting with adapter sequence"""
        header = self.make_header()
        adapter_read = illumina_adapters.PAIRED_END[1][:40]+'T'*10
        segments = [self.make_segment(header, 'adapter', 4, adapter_read)]
        if not unmapped_only:
            segments = [
                self.make_segment(header, 'pair', 99, self.REFERENCE[100:150], 100, 300, 250),
                self.make_segment(header, 'pair', 147, self.REFERENCE[300:350], 300, 100, -250),
            ] + segments
        bam_path = os.path.join(self.tmpdir, name)
        # CRAM is written against the reference
        with pysam.AlignmentFile(bam_path, mode, header=header,
                                 reference_filename=self.reference_path) as out:
            for segment in segments:
                out.write(segment)
        return bam_path

    def summary_config(self, levels=None, histogram_file=None, reference=True, bam_path=None):
        return {
            alignment_summary.CONFIG_KEY_ADAPTERS: None,
            alignment_summary.CONFIG_KEY_BAM: bam_path if bam_path != None else self.bam_path,
            alignment_summary.CONFIG_KEY_BISULFITE: False,
            alignment_summary.CONFIG_KEY_COLLECT_ALIGNMENT_INFO: True,
            alignment_summary.CONFIG_KEY_DEBUG: self.debug,
            alignment_summary.CONFIG_KEY_EXPECTED_ORIENTATIONS: None,
            alignment_summary.CONFIG_KEY_HISTOGRAM_FILE: histogram_file,
            alignment_summary.CONFIG_KEY_LEVELS: levels,
            alignment_summary.CONFIG_KEY_LOG: self.log_path,
            alignment_summary.CONFIG_KEY_MAX_INSERT_SIZE: None,
            alignment_summary.CONFIG_KEY_REFERENCE: self.reference_path if reference else None,
            alignment_summary.CONFIG_KEY_VERBOSE: self.verbose
        }

    def read_output(self, out_path):
        self.assertTrue(os.path.exists(out_path))
        with (open(out_path)) as f: output = json.loads(f.read())
        return output

    def test_alignment_summary(self):
        config = self.summary_config(['ALL_READS', 'READ_GROUP'])
        qc = alignment_summary(config)
        out_path = os.path.join(self.tmpdir, 'out.json')
        qc.write_output(out_path)
        output = self.read_output(out_path)
        self.assertEqual(read_package_version(), output['package version'])
        self.assertEqual(self.bam_path, output['input'])
        self.assertEqual(2, len(output['metrics']))
        expected_variables = {
            'ACCUMULATION_LEVEL': 'ALL_READS',
            'TOTAL_READS': 3,
            'PF_READS': 3,
            'PF_READS_ALIGNED': 2,
            'PF_ALIGNED_BASES': 100,
            'PF_HQ_ALIGNED_BASES': 100,
            'PF_HQ_ALIGNED_Q20_BASES': 100,
            'PF_MISMATCH_RATE': 0.0,
            'PF_HQ_MEDIAN_MISMATCHES': 0.0,
            'BAD_CYCLES': 0,
            'READS_ALIGNED_IN_PAIRS': 2,
            'CHIMERIC_PAIRS': 0,
            'PAIR_ORIENTATION_FR': 1,
            'PF_ADAPTER_READS': 1,
            'STRAND_BALANCE': 0.5,
            'MEAN_READ_LENGTH': 50.0,
        }
        row = output['metrics'][0]
        for key in expected_variables.keys():
            expected = expected_variables[key]
            got = row[key]
            try:
                self.assertEqual(expected, got)
            except AssertionError:
                print("\nFailed on metric '"+key+"': Expected", expected, ", got", got,
                      file=sys.stderr)
                raise
        rg_row = output['metrics'][1]
        self.assertEqual('READ_GROUP', rg_row['ACCUMULATION_LEVEL'])
        self.assertEqual('rg1', rg_row['READ_GROUP'])
        self.assertEqual('sample1', rg_row['SAMPLE'])
        self.assertEqual('library1', rg_row['LIBRARY'])
        self.assertEqual(row['TOTAL_READS'], rg_row['TOTAL_READS'])
        labels = [hist['value label'] for hist in output['histograms']]
        self.assertIn('TOTAL_LENGTH_COUNT', labels)
        self.assertIn('PAIRED_TOTAL_LENGTH_COUNT', labels)
        self.assertIn('rg1.ALIGNED_LENGTH_COUNT', labels)
        self.assertEqual({'50': 3}, output['histograms'][0]['bins'])

    def test_without_reference(self):
        qc = alignment_summary(self.summary_config(reference=False))
        out_path = os.path.join(self.tmpdir, 'out_no_ref.json')
        qc.write_output(out_path)
        row = self.read_output(out_path)['metrics'][0]
        self.assertIsNone(row['PF_MISMATCH_RATE'])
        self.assertIsNone(row['BAD_CYCLES'])
        self.assertEqual(2, row['PF_READS_ALIGNED'])

    def test_histogram_chart(self):
        calls = []
        def renderer(metrics_path, chart_path, input_name):
            calls.append((metrics_path, chart_path, input_name))
            return 0
        chart_path = os.path.join(self.tmpdir, 'chart.pdf')
        out_path = os.path.join(self.tmpdir, 'out.json')
        alignment_summary(self.summary_config(histogram_file=chart_path), renderer).write_output(out_path)
        self.assertEqual([(out_path, chart_path, 'test.bam')], calls)
        # renderer failure is an error
        failed = alignment_summary(self.summary_config(histogram_file=chart_path), lambda x, y, z: 1)
        with self.assertRaises(RuntimeError):
            failed.write_output(out_path)
        # chart is dropped without ALL_READS
        qc = alignment_summary(self.summary_config(['SAMPLE'], chart_path), renderer)
        self.assertIsNone(qc.histogram_file)
        qc.write_output(out_path)
        self.assertEqual(1, len(calls))

    def test_invalid_config(self):
        config = self.summary_config()
        del config[alignment_summary.CONFIG_KEY_BISULFITE]
        with self.assertRaises(ValueError):
            alignment_summary(config)
        config = self.summary_config()
        config[alignment_summary.CONFIG_KEY_MAX_INSERT_SIZE] = 'large'
        with self.assertRaises(ValueError):
            alignment_summary(config)
        with self.assertRaises(ValueError):
            alignment_summary(self.summary_config(['ALL_READS', 'LANE']))

    def test_cram_input(self):
        cram_path = self.write_bam('test.cram', 'wc')
        out_path = os.path.join(self.tmpdir, 'out_cram.json')
        alignment_summary(self.summary_config(bam_path=cram_path)).write_output(out_path)
        row = self.read_output(out_path)['metrics'][0]
        self.assertEqual(3, row['TOTAL_READS'])
        self.assertEqual(2, row['PF_READS_ALIGNED'])
        self.assertEqual(100, row['PF_ALIGNED_BASES'])
        self.assertEqual(0.0, row['PF_MISMATCH_RATE'])
        out_path = os.path.join(self.tmpdir, 'out_cram_quality.json')
        mean_quality_by_cycle(self.quality_config(bam_path=cram_path)).write_output(out_path)
        hist = self.read_output(out_path)['histograms'][0]
        self.assertEqual(100, len(hist['bins']))
        out_path = os.path.join(self.tmpdir, 'out_cram_hs.json')
        hs_metrics(self.hs_config(bam_path=cram_path)).write_output(out_path)
        row = self.read_output(out_path)['metrics'][0]
        self.assertEqual(50, row['ON_BAIT_BASES'])

    def quality_config(self, chart_file=None, bam_path=None):
        return {
            mean_quality_by_cycle.CONFIG_KEY_ALIGNED_READS_ONLY: True,
            mean_quality_by_cycle.CONFIG_KEY_BAM: bam_path if bam_path != None else self.bam_path,
            mean_quality_by_cycle.CONFIG_KEY_CHART_FILE: chart_file,
            mean_quality_by_cycle.CONFIG_KEY_DEBUG: self.debug,
            mean_quality_by_cycle.CONFIG_KEY_LOG: self.log_path,
            mean_quality_by_cycle.CONFIG_KEY_PF_READS_ONLY: False,
            mean_quality_by_cycle.CONFIG_KEY_REFERENCE: self.reference_path,
            mean_quality_by_cycle.CONFIG_KEY_VERBOSE: self.verbose
        }

    def test_mean_quality_by_cycle(self):
        out_path = os.path.join(self.tmpdir, 'out_quality.json')
        mean_quality_by_cycle(self.quality_config()).write_output(out_path)
        output = self.read_output(out_path)
        self.assertEqual(1, len(output['histograms']))
        hist = output['histograms'][0]
        self.assertEqual('MEAN_QUALITY', hist['value label'])
        # 50 cycles for read 1, 50 for read 2
        self.assertEqual(100, len(hist['bins']))
        self.assertEqual(40.0, hist['bins']['1'])
        self.assertEqual(40.0, hist['bins']['100'])

    def test_quality_chart(self):
        calls = []
        def renderer(metrics_path, chart_path, input_name, subtitle):
            calls.append((metrics_path, chart_path, input_name, subtitle))
            return 0
        chart_path = os.path.join(self.tmpdir, 'quality.pdf')
        out_path = os.path.join(self.tmpdir, 'out_quality.json')
        mean_quality_by_cycle(self.quality_config(chart_path), renderer).write_output(out_path)
        # single read group; library name is the subtitle
        self.assertEqual([(out_path, chart_path, 'test.bam', 'library1')], calls)
        failed = mean_quality_by_cycle(self.quality_config(chart_path), lambda w, x, y, z: 1)
        with self.assertRaises(RuntimeError):
            failed.write_output(out_path)
        # no aligned reads, so no valid bases and no chart
        unmapped_path = self.write_bam('unmapped.bam', unmapped_only=True)
        qc = mean_quality_by_cycle(self.quality_config(chart_path, unmapped_path), renderer)
        qc.write_output(out_path)
        self.assertTrue(os.path.exists(out_path))
        self.assertEqual(1, len(calls))

    def hs_config(self, bam_path=None, near_distance=None):
        return {
            hs_metrics.CONFIG_KEY_BAITS: self.bait_path,
            hs_metrics.CONFIG_KEY_BAIT_SET_NAME: None,
            hs_metrics.CONFIG_KEY_BAM: bam_path if bam_path != None else self.bam_path,
            hs_metrics.CONFIG_KEY_DEBUG: self.debug,
            hs_metrics.CONFIG_KEY_DUPLICATES_MARKED: None,
            hs_metrics.CONFIG_KEY_LOG: self.log_path,
            hs_metrics.CONFIG_KEY_MIN_BASE_QUALITY: None,
            hs_metrics.CONFIG_KEY_MIN_MAPQ: None,
            hs_metrics.CONFIG_KEY_NEAR_DISTANCE: near_distance,
            hs_metrics.CONFIG_KEY_REFERENCE: self.reference_path,
            hs_metrics.CONFIG_KEY_TARGETS: self.target_path,
            hs_metrics.CONFIG_KEY_VERBOSE: self.verbose
        }

    def test_hs_metrics(self):
        out_path = os.path.join(self.tmpdir, 'out_hs.json')
        hs_metrics(self.hs_config()).write_output(out_path)
        output = self.read_output(out_path)
        row = output['metrics'][0]
        self.assertEqual('baits', row['BAIT_SET'])
        self.assertEqual(1000, row['GENOME_SIZE'])
        self.assertEqual(3, row['TOTAL_READS'])
        self.assertEqual(100, row['PF_BASES_ALIGNED'])
        self.assertEqual(50, row['ON_BAIT_BASES'])
        self.assertEqual(50, row['NEAR_BAIT_BASES'])
        self.assertEqual(0, row['OFF_BAIT_BASES'])
        self.assertEqual(30, row['ON_TARGET_BASES'])
        self.assertEqual(1, row['PF_SELECTED_PAIRS'])
        self.assertIsNone(row['HS_LIBRARY_SIZE'])
        self.assertEqual('COVERAGE', output['histograms'][0]['bin label'])
        # bait 100-200 padded by 50 ends at 250, short of the read at 300
        out_path = os.path.join(self.tmpdir, 'out_hs_near.json')
        hs_metrics(self.hs_config(near_distance=50)).write_output(out_path)
        row = self.read_output(out_path)['metrics'][0]
        self.assertEqual(50, row['ON_BAIT_BASES'])
        self.assertEqual(0, row['NEAR_BAIT_BASES'])
        self.assertEqual(50, row['OFF_BAIT_BASES'])

    def test_main_script(self):
        relative_path = os.path.join(os.path.dirname(__file__), os.pardir, 'bin', 'run_alignment_summary.py')
        script = os.path.realpath(relative_path)
        out_path = os.path.join(self.tmpdir, 'script_out.json')
        args = [
            sys.executable,
            script,
            '--bam', self.bam_path,
            '--reference', self.reference_path,
            '--level', 'ALL_READS',
            '--level', 'SAMPLE',
            '--max-insert-size', '1000',
            '--out', out_path,
            '--log-path', self.log_path,
        ]
        if self.debug:
            args.append('--debug')
        if self.verbose:
            args.append('--verbose')
        env = os.environ.copy()
        env['PYTHONPATH'] = os.pathsep.join(
            [os.path.realpath(os.path.join(self.testdir, os.pardir)), env.get('PYTHONPATH', '')]
        )
        result = subprocess.run(args, env=env, capture_output=True, text=True)
        try:
            result.check_returncode()
        except subprocess.CalledProcessError:
            print("STANDARD OUTPUT:", result.stdout, file=sys.stderr)
            print("STANDARD ERROR:", result.stderr, file=sys.stderr)
            raise
        output = self.read_output(out_path)
        self.assertEqual(1000, output['max insert size'])
        self.assertEqual(['ALL_READS', 'SAMPLE'], [row['ACCUMULATION_LEVEL'] for row in output['metrics']])

    def tearDown(self):
        self.tmp.cleanup()

if __name__ == '__main__':
    unittest.main()
