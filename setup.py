#!/usr/bin/env python

from setuptools import setup

setup(name='python-memcachetext',
      version='0.1.0',
      description='Pure python client for the memcached text protocol',
      long_description=open('README.md').read(),
      long_description_content_type='text/markdown',
      author='Sean Reifschneider',
      author_email='jafo@tummy.com',
      maintainer='Sean Reifschneider',
      maintainer_email='jafo@tummy.com',
      url='https://github.com/linsomniac/python-memcached2',
      py_modules=['memcachetext'],
      python_requires='>=3.6',
      classifiers=[
        'Development Status :: 3 - Alpha',
        'Intended Audience :: Developers',
        'License :: OSI Approved :: Apache Software License',
        'Operating System :: OS Independent',
        'Programming Language :: Python',
        'Topic :: Internet',
        'Topic :: Software Development :: Libraries :: Python Modules',
        'Programming Language :: Python :: 3',
        ])
