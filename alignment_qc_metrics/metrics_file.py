"""Generic sink for metric rows and histograms, written as JSON"""

import json
import logging
import sys


class metrics_file(object):

    ROWS_KEY = 'metrics'
    HISTOGRAMS_KEY = 'histograms'

    def __init__(self, header=None, logger=None):
        """'header' is a dictionary of run-level values, eg. input path and package version"""
        self.header = dict(header) if header != None else {}
        self.logger = logger if logger != None else logging.getLogger(__name__)
        self.rows = []
        self.histograms = []

    def add_row(self, row):
        self.rows.append(row)

    def add_histogram(self, hist):
        self.histograms.append(hist)

    def get_histograms(self):
        return self.histograms

    def get_rows(self):
        return self.rows

    def to_dict(self):
        output = self.header.copy()
        output[self.ROWS_KEY] = [dict(row) for row in self.rows]
        # JSON doesn't allow numeric dictionary keys, so bins are stringified in output
        output[self.HISTOGRAMS_KEY] = [hist.to_dict() for hist in self.histograms]
        return output

    def write_output(self, out_path):
        if out_path != '-':
            out_file = open(out_path, 'w')
            dest = out_path
        else:
            out_file = sys.stdout
            dest = 'STDOUT'
        print(json.dumps(self.to_dict()), file=out_file)
        if out_path != '-':
            out_file.close()
        self.logger.debug("Wrote JSON output to %s" % dest)
