from setuptools import setup

setup(
    name='pyVMRseq',
    version='0.1.0',
    description='A Python package for detection of variably methylated regions in single-cell methylation data',
    author='Andy Graham',
    author_email='andygraham7162@gmail.com',
    license='BSD 2-clause',
    packages=['pyVMRseq'],
    install_requires=['numpy',
                      'scipy',
                      'pandas',
                      'numba',
                      'ray',
                      'matplotlib',
                      'seaborn'
                      ],
    extras_require={'test': ['pytest']},

    classifiers=[
        'Development Status :: 1 - Planning',
        'Intended Audience :: Science/Research',
        'License :: OSI Approved :: BSD License',
        'Operating System :: POSIX :: Linux',
        'Programming Language :: Python :: 3.11',
    ],
)
