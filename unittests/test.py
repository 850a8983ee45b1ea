#! /usr/bin/env python
"""Runs unit tests on all ltiprovider modules"""

import unittest
import logging

import test_cartridge
import test_model
import test_oauth
import test_provider
import test_services
import test_store
import test_wsgi


def suite():
    return unittest.TestSuite((
        test_cartridge.suite(),
        test_model.suite(),
        test_oauth.suite(),
        test_provider.suite(),
        test_services.suite(),
        test_store.suite(),
        test_wsgi.suite()
    ))


def load_tests(loader, tests, pattern):
    return suite()


if __name__ == "__main__":
    logging.basicConfig(level=logging.ERROR)
    unittest.main()
