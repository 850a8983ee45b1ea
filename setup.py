#!/usr/bin/env python

from setuptools import setup

import ltiprovider.info


with open('README.rst') as f:
    long_description = f.read()

setup(name=ltiprovider.info.name,
      version=ltiprovider.info.version,
      description=ltiprovider.info.title,
      long_description=long_description,
      packages=['ltiprovider'],
      install_requires=['oauthlib>=3.0',
                        'requests>=2.0',
                        'lxml>=4.0'],
      python_requires='>=3.6',
      classifiers=['Development Status :: 3 - Alpha',
                   'Intended Audience :: Developers',
                   'Natural Language :: English',
                   'License :: OSI Approved :: BSD License',
                   'Operating System :: OS Independent',
                   'Programming Language :: Python',
                   'Programming Language :: Python :: 3',
                   'Topic :: Education',
                   'Topic :: Education :: '
                   'Computer Aided Instruction (CAI)',
                   'Topic :: Internet :: WWW/HTTP :: WSGI :: Application',
                   'Topic :: Software Development :: '
                   'Libraries :: Python Modules']
      )
