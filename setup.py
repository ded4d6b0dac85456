#! /usr/bin/env python3

import sys
import os
from setuptools import setup

assert 0x03060000 <= sys.hexversion, \
    "Install Python, version 3.6 or greater"


def read_version():
    with open(os.path.join('git-updatehook', 'git_updatehook.py')) as f:
        for line in f:
            if line.startswith('__version__'):
                return line.split('=', 1)[1].strip().strip('\'"')
    raise RuntimeError('no __version__ in git_updatehook.py')


def read_readme():
    with open(os.path.join('git-updatehook', 'README')) as f:
        return f.read()

setup(
    name='git-updatehook',
    version=read_version(),
    description='Enforce branch policy and send notification emails for Git pushes',
    long_description=read_readme(),
    classifiers=[
        'Development Status :: 5 - Production/Stable',
        'Environment :: No Input/Output (Daemon)',
        'Intended Audience :: Developers',
        'Intended Audience :: System Administrators',
        'License :: OSI Approved :: GNU General Public License v2 (GPLv2)',
        'Operating System :: OS Independent',
        'Programming Language :: Python :: 3',
        'Topic :: Communications :: Email',
        'Topic :: Software Development :: Version Control',
        ],
    keywords='git hook email',
    license='GPLv2',
    python_requires='>=3.6',
    package_dir={'': 'git-updatehook'},
    py_modules=['git_updatehook'],
    extras_require={
        'test': ['pytest'],
        },
    )
